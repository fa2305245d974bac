"""
Custom exception hierarchy for the offline cache router.

All exceptions inherit from MediCacheError, which provides optional context
for structured error handling and logging.
"""

from __future__ import annotations

from typing import Any


class MediCacheError(Exception):
    """Base exception for all offline cache router errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(MediCacheError):
    """Raised when configuration is invalid or missing.

    Examples:
        - Offline page not part of the static asset manifest
        - API prefix without surrounding slashes
    """

    pass


class CacheStoreError(MediCacheError):
    """Raised when the cache store cannot be read or written.

    Context should include:
        - cache_name: The cache being accessed
        - operation: The store operation (open, put, match, delete)
    """

    pass


class NetworkError(MediCacheError):
    """Raised when a network fetch fails before a response is received.

    Context should include:
        - url: The URL that was being fetched
        - method: The HTTP method
        - reason: The transport error (DNS, connect, timeout, ...)
    """

    pass


class InstallError(MediCacheError):
    """Raised when precaching the static asset manifest fails.

    Context should include:
        - cache_name: The cache version being installed
        - failed: Manifest entries that could not be fetched
    """

    pass


class PushPayloadError(MediCacheError):
    """Raised when a push message payload is not valid JSON or has the wrong shape."""

    pass


class RegistrationError(MediCacheError):
    """Raised when a worker registration operation is invalid.

    Context should include:
        - scope: The registration scope
        - state: The worker state at the time of the error
    """

    pass
