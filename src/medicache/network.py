"""
Upstream network access.

HttpNetwork performs a single fetch per call through httpx and converts the
result into a captured Response. Transport failures (DNS, connect, timeout)
and URLs httpx refuses to send surface as NetworkError; HTTP error statuses
are ordinary responses.
"""

from __future__ import annotations

from typing import Protocol

import httpx

from medicache.exceptions import NetworkError
from medicache.logging import get_logger
from medicache.types import Request, RequestMode, Response, ResponseType, origin_of

logger = get_logger(__name__)

USER_AGENT = "MediCareOffline/0.2"

# Request timeout
REQUEST_TIMEOUT = 30.0

# Hop-by-hop and transfer headers that do not describe the stored body
_DROPPED_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "transfer-encoding",
    "content-encoding",
    "content-length",
}

# httpx raises InvalidURL, CookieConflict and StreamError outside HTTPError
_FETCH_ERRORS = (httpx.HTTPError, httpx.InvalidURL, httpx.CookieConflict, httpx.StreamError)


class Network(Protocol):
    """Anything that can fetch a Request."""

    async def fetch(self, request: Request) -> Response: ...


class HttpNetwork:
    """Fetches requests from the network via httpx.

    Response tainting follows the page's point of view: same-origin responses
    are "basic", cross-origin responses are "cors", or "opaque" for no-cors
    requests (status and body hidden).
    """

    def __init__(
        self,
        origin: str,
        timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the network.

        Args:
            origin: Origin of the application shell, used for response tainting.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self.origin = origin
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _response_type(self, request: Request, final_url: str) -> ResponseType:
        # Redirects are followed, so the final URL decides tainting
        if origin_of(final_url) == self.origin:
            return ResponseType.BASIC
        if request.mode == RequestMode.NO_CORS:
            return ResponseType.OPAQUE
        return ResponseType.CORS

    async def fetch(self, request: Request) -> Response:
        """Fetch a request once.

        Raises:
            NetworkError: If no response could be obtained.
        """
        client = await self._get_client()
        try:
            upstream = await client.request(
                request.method,
                request.url,
                headers=request.headers,
                content=request.body or None,
            )
        except _FETCH_ERRORS as e:
            logger.debug("Network fetch failed", url=request.url, error=str(e))
            raise NetworkError(
                "Network fetch failed",
                context={"url": request.url, "method": request.method, "reason": str(e)},
            ) from e

        response_type = self._response_type(request, str(upstream.url))
        if response_type == ResponseType.OPAQUE:
            return Response(status=0, url=str(upstream.url), type=response_type)

        headers = {
            name: value
            for name, value in upstream.headers.items()
            if name.lower() not in _DROPPED_RESPONSE_HEADERS
        }
        return Response(
            status=upstream.status_code,
            body=upstream.content,
            headers=headers,
            url=str(upstream.url),
            type=response_type,
        )
