"""
Offline cache router.

Decides, per intercepted request, whether to answer from the versioned cache,
from the network, or from a fallback. Classification precedence is fixed:

    cross-origin (not tunnel host) -> non-GET -> API prefix -> navigate -> asset

Navigation and asset requests always receive a Response; network failures
are recovered locally and never reach the caller. Cross-origin, non-GET and
API requests are forwarded to the network untouched and never use the cache.
"""

from __future__ import annotations

import asyncio

from medicache.cache.store import CacheStorage
from medicache.config import CacheConfig
from medicache.exceptions import NetworkError
from medicache.logging import get_logger
from medicache.network import Network
from medicache.types import Request, RequestClass, RequestMode, Response, ResponseType

logger = get_logger(__name__)

NETWORK_ERROR_BODY = "Network error happened"
OFFLINE_UNAVAILABLE_BODY = "Offline and no cached fallback available"


class OfflineCacheRouter:
    """Routes requests between the cache store and the network.

    Stateless across requests; the cache store is the only shared state.
    Cache writes after a network fetch are fire-and-forget background tasks.
    """

    def __init__(
        self,
        config: CacheConfig,
        storage: CacheStorage,
        network: Network,
    ) -> None:
        """Initialize the router.

        Args:
            config: Versioned cache policy.
            storage: Cache store holding every cache version.
            network: Upstream fetcher.
        """
        self.config = config
        self.storage = storage
        self.network = network
        self._pending_writes: set[asyncio.Task[None]] = set()

    def classify(self, request: Request) -> RequestClass:
        """Classify a request into exactly one RequestClass."""
        if (
            not request.url.startswith(self.config.origin)
            and self.config.tunnel_host_pattern not in request.url
        ):
            return RequestClass.CROSS_ORIGIN_IGNORED
        if request.method != "GET":
            return RequestClass.NON_GET_PASSTHROUGH
        if self.config.api_prefix in request.url:
            return RequestClass.API_PASSTHROUGH
        if request.mode == RequestMode.NAVIGATE:
            return RequestClass.NAVIGATION
        return RequestClass.ASSET

    async def handle(self, request: Request) -> Response:
        """Produce the response for an intercepted request.

        Raises:
            NetworkError: Only for passthrough classes, which are not recovered.
        """
        request_class = self.classify(request)
        logger.debug(
            "Routing request",
            url=request.url,
            method=request.method,
            request_class=request_class.value,
        )

        if request_class == RequestClass.NAVIGATION:
            return await self.network_first(request)
        if request_class == RequestClass.ASSET:
            return await self.cache_first(request)
        return await self.network.fetch(request)

    async def network_first(self, request: Request) -> Response:
        """Single network attempt, falling back to the cached offline page."""
        try:
            return await self.network.fetch(request)
        except NetworkError as e:
            logger.info("Navigation offline, serving fallback page", url=request.url, error=e.message)

        fallback = await self.storage.match(Request(url=self.config.offline_url))
        if fallback is not None:
            return fallback

        logger.warning("Offline fallback page missing from cache", url=self.config.offline_url)
        return Response.plain_text(503, OFFLINE_UNAVAILABLE_BODY)

    async def cache_first(self, request: Request) -> Response:
        """Serve from cache; on miss fetch, cache valid responses, and recover failures."""
        cached = await self.storage.match(request)
        if cached is not None:
            logger.debug("Cache hit", url=request.url)
            return cached

        try:
            response = await self.network.fetch(request.clone())
        except NetworkError as e:
            logger.error("Asset fetch failed", url=request.url, error=e.message)
            return await self._asset_fallback(request)

        if response.status != 200 or response.type != ResponseType.BASIC:
            return response

        self._schedule_write(request, response.clone())
        return response

    async def _asset_fallback(self, request: Request) -> Response:
        if request.destination == "image":
            placeholder = await self.storage.match(Request(url=self.config.placeholder_url))
            if placeholder is not None:
                return placeholder
            logger.warning("Placeholder image missing from cache", url=self.config.placeholder_url)
        return Response.plain_text(408, NETWORK_ERROR_BODY)

    def _schedule_write(self, request: Request, response: Response) -> None:
        task = asyncio.create_task(self._write(request, response))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _write(self, request: Request, response: Response) -> None:
        try:
            cache = await self.storage.open(self.config.cache_name)
            await cache.put(request, response)
        except Exception as e:
            # Response already returned to the caller
            logger.warning("Background cache write failed", url=request.url, error=str(e))

    @property
    def pending_writes(self) -> int:
        """Number of background cache writes still in flight."""
        return len(self._pending_writes)

    async def drain(self) -> None:
        """Wait for all in-flight background cache writes to finish."""
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes))
