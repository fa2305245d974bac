"""
Cache package for captured HTTP responses.

- CacheStorage: all named caches, one per cache version tag
- Cache: a single versioned request -> response store
"""

from medicache.cache.store import Cache, CacheStorage

__all__ = ["Cache", "CacheStorage"]
