"""
Offline-first HTTP gateway.

Serves the application shell through the offline worker: every request that
reaches the gateway is rewritten onto the configured origin, wrapped in a
fetch event and answered by the OfflineCacheRouter. Worker state, push
delivery and notification clicks are exposed under /__worker.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from urllib.parse import urlparse

import httpx
from fastapi import FastAPI, HTTPException, Request as HTTPRequest
from fastapi.responses import JSONResponse, Response as HTTPResponse

from medicache import __version__
from medicache.cache.store import CacheStorage
from medicache.config import Settings, load_settings
from medicache.exceptions import NetworkError, PushPayloadError
from medicache.logging import get_logger, setup_logging
from medicache.network import HttpNetwork
from medicache.registration import Registration, registration_enabled
from medicache.types import Request, RequestMode, Response
from medicache.worker import FetchEvent, NotificationClickEvent, PushEvent, ServiceWorker

logger = get_logger(__name__)

WORKER_PREFIX = "/__worker"

_FORWARD_EXCLUDED_HEADERS = {"host", "connection", "content-length", "accept-encoding"}
_ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def _to_worker_request(settings: Settings, http_request: HTTPRequest, body: bytes) -> Request:
    """Convert an incoming gateway request into a worker Request on the origin."""
    # url.path is percent-decoded; raw_path keeps %3F and %23 as sent
    raw_path = http_request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else http_request.url.path
    url = f"{settings.ORIGIN}{path}"
    query = http_request.scope.get("query_string", b"").decode("latin-1")
    if query:
        url = f"{url}?{query}"

    mode_header = http_request.headers.get("sec-fetch-mode", RequestMode.CORS.value)
    try:
        mode = RequestMode(mode_header)
    except ValueError:
        mode = RequestMode.CORS

    headers = {
        name: value
        for name, value in http_request.headers.items()
        if name.lower() not in _FORWARD_EXCLUDED_HEADERS
    }
    return Request(
        url=url,
        method=http_request.method,
        mode=mode,
        destination=http_request.headers.get("sec-fetch-dest", ""),
        headers=headers,
        body=body,
    )


def _to_http_response(response: Response) -> HTTPResponse:
    # Opaque responses carry status 0, which cannot be sent on the wire
    return HTTPResponse(
        content=response.body,
        status_code=response.status or 502,
        headers=response.headers,
    )


def create_app(
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the gateway application.

    Args:
        settings: Settings to use (defaults to the environment).
        transport: Optional httpx transport for the upstream network.
    """
    settings = settings or load_settings()
    config = settings.cache_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
        settings.ensure_directories()

        storage = CacheStorage(settings.CACHE_DIR)
        await storage.init()
        network = HttpNetwork(config.origin, timeout=settings.REQUEST_TIMEOUT, transport=transport)
        registration = Registration(config, storage, network)
        hostname = urlparse(config.origin).hostname or ""
        if not registration_enabled(hostname, settings.PRODUCTION):
            logger.info("Worker registration disabled for development host", hostname=hostname)
        elif await registration.start(config.script_url, hostname) is None:
            logger.warning("Gateway running without an active worker; requests pass through")

        app.state.storage = storage
        app.state.network = network
        app.state.registration = registration
        try:
            yield
        finally:
            if registration.active is not None:
                await registration.active.router.drain()
            await network.close()
            await storage.close()

    app = FastAPI(title="MediCare Offline Gateway", version=__version__, lifespan=lifespan)

    @app.exception_handler(NetworkError)
    async def network_error_handler(request: HTTPRequest, exc: NetworkError) -> JSONResponse:
        return JSONResponse(status_code=502, content={"detail": exc.message, **exc.context})

    @app.get(f"{WORKER_PREFIX}/status")
    async def worker_status(http_request: HTTPRequest) -> dict[str, Any]:
        registration: Registration = http_request.app.state.registration
        storage: CacheStorage = http_request.app.state.storage
        worker = registration.active
        return {
            "version": __version__,
            "cache_name": config.cache_name,
            "worker_id": worker.worker_id if worker else None,
            "state": worker.state.value if worker else None,
            "caches": await storage.entry_counts(),
        }

    @app.post(f"{WORKER_PREFIX}/push")
    async def push(http_request: HTTPRequest) -> dict[str, Any]:
        worker = _require_worker(http_request)
        try:
            notification = await worker.dispatch(PushEvent(data=await http_request.body()))
        except PushPayloadError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        return notification.to_dict()

    @app.get(f"{WORKER_PREFIX}/notifications")
    async def notifications(http_request: HTTPRequest) -> list[dict[str, Any]]:
        worker = _require_worker(http_request)
        return [n.to_dict() for n in worker.notifications.open_notifications()]

    @app.post(f"{WORKER_PREFIX}/notifications/{{notification_id}}/click")
    async def notification_click(notification_id: str, http_request: HTTPRequest) -> dict[str, Any]:
        worker = _require_worker(http_request)
        if worker.notifications.get(notification_id) is None:
            raise HTTPException(status_code=404, detail="Unknown notification")
        client = await worker.dispatch(NotificationClickEvent(notification_id=notification_id))
        return {"client_id": client.client_id, "url": client.url, "focused": client.focused}

    @app.api_route("/{path:path}", methods=_ALL_METHODS)
    async def gateway(path: str, http_request: HTTPRequest) -> HTTPResponse:
        request = _to_worker_request(settings, http_request, await http_request.body())
        registration: Registration = http_request.app.state.registration
        if registration.active is None:
            response = await registration.network.fetch(request)
        else:
            response = await registration.active.dispatch(FetchEvent(request=request))
        return _to_http_response(response)

    return app


def _require_worker(http_request: HTTPRequest) -> ServiceWorker:
    worker = http_request.app.state.registration.active
    if worker is None:
        raise HTTPException(status_code=503, detail="No active worker")
    return worker
