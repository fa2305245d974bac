"""
Service worker lifecycle and event dispatch.

The worker reacts to five event types through an explicit dispatch table:

- install: precache the static asset manifest into the current cache version
  (all or nothing), then skip waiting
- activate: delete every cache whose name is not the current version tag and
  claim all open clients
- fetch: hand the request to the OfflineCacheRouter
- push: show a notification for the JSON payload
- notificationclick: close the notification and open/focus its URL
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

from medicache.cache.store import CacheStorage
from medicache.config import CacheConfig
from medicache.exceptions import CacheStoreError, InstallError, RegistrationError
from medicache.logging import get_logger, log_context
from medicache.network import Network
from medicache.notifications import NotificationCenter, parse_push_payload
from medicache.router import OfflineCacheRouter
from medicache.types import (
    Client,
    Notification,
    Request,
    Response,
    WorkerState,
    generate_id,
)

logger = get_logger(__name__)


class ClientRegistry:
    """Pages (windows) open on the application's origin."""

    def __init__(self) -> None:
        self._clients: dict[str, Client] = {}
        self.controller: str | None = None

    def add(self, url: str, focused: bool = False) -> Client:
        """Register a newly opened page."""
        client = Client.create(url, focused=focused)
        if focused:
            self._unfocus_all()
        self._clients[client.client_id] = client
        return client

    def remove(self, client_id: str) -> None:
        self._clients.pop(client_id, None)

    def get(self, client_id: str) -> Client | None:
        return self._clients.get(client_id)

    def all(self) -> list[Client]:
        return list(self._clients.values())

    def claim(self, worker_id: str) -> int:
        """Make a worker the controller of every open client.

        Returns:
            Number of clients now controlled by the worker.
        """
        self.controller = worker_id
        for client in self._clients.values():
            client.controlled_by = worker_id
        return len(self._clients)

    def release(self, worker_id: str) -> None:
        """Drop control held by a worker that is going away."""
        if self.controller == worker_id:
            self.controller = None
        for client in self._clients.values():
            if client.controlled_by == worker_id:
                client.controlled_by = None

    def open_window(self, url: str) -> Client:
        """Focus a client already showing a URL, or open a new one."""
        for client in self._clients.values():
            if client.url == url:
                self._unfocus_all()
                client.focused = True
                return client

        client = self.add(url, focused=True)
        client.controlled_by = self.controller
        return client

    def _unfocus_all(self) -> None:
        for client in self._clients.values():
            client.focused = False


async def purge_stale_caches(storage: CacheStorage, current: str) -> list[str]:
    """Delete every cache whose name is not the current version tag.

    Returns:
        Names of the caches that were deleted.
    """
    deleted: list[str] = []
    for cache_name in await storage.keys():
        if cache_name != current:
            logger.info("Deleting old cache", old_cache=cache_name)
            await storage.delete(cache_name)
            deleted.append(cache_name)
    return deleted


@dataclass(frozen=True)
class InstallEvent:
    type: str = field(default="install", init=False)


@dataclass(frozen=True)
class ActivateEvent:
    type: str = field(default="activate", init=False)


@dataclass(frozen=True)
class FetchEvent:
    request: Request
    type: str = field(default="fetch", init=False)


@dataclass(frozen=True)
class PushEvent:
    data: bytes | str | dict[str, Any]
    type: str = field(default="push", init=False)


@dataclass(frozen=True)
class NotificationClickEvent:
    notification_id: str
    type: str = field(default="notificationclick", init=False)


WorkerEvent = Union[InstallEvent, ActivateEvent, FetchEvent, PushEvent, NotificationClickEvent]


class ServiceWorker:
    """One version of the offline worker.

    Created in the "parsed" state. A successful install moves it to
    "installed" and requests skip-waiting; activation then purges stale
    caches and claims clients. A failed install makes it "redundant".
    """

    def __init__(
        self,
        config: CacheConfig,
        storage: CacheStorage,
        network: Network,
        clients: ClientRegistry | None = None,
    ) -> None:
        self.worker_id = generate_id("sw")
        self.config = config
        self.storage = storage
        self.network = network
        self.clients = clients if clients is not None else ClientRegistry()
        self.router = OfflineCacheRouter(config, storage, network)
        self.notifications = NotificationCenter(config, self.clients)
        self.state = WorkerState.PARSED
        self.skip_waiting_requested = False

        self._handlers: dict[str, Callable[[Any], Awaitable[Any]]] = {
            "install": lambda event: self.install(),
            "activate": lambda event: self.activate(),
            "fetch": lambda event: self.handle_fetch(event.request),
            "push": lambda event: self.handle_push(event.data),
            "notificationclick": lambda event: self.handle_notification_click(
                event.notification_id
            ),
        }

    def __repr__(self) -> str:
        return f"ServiceWorker({self.worker_id!r}, state={self.state.value!r})"

    async def dispatch(self, event: WorkerEvent) -> Any:
        """Route a platform event to its handler.

        Raises:
            RegistrationError: If the event type has no handler.
        """
        handler = self._handlers.get(event.type)
        if handler is None:
            raise RegistrationError(
                "No handler for event", context={"event": event.type, "state": self.state.value}
            )
        with log_context(event=event.type, cache_name=self.config.cache_name):
            return await handler(event)

    def _set_state(self, state: WorkerState) -> None:
        logger.debug("Worker state change", worker_id=self.worker_id, old=self.state.value, new=state.value)
        self.state = state

    async def install(self) -> None:
        """Precache every manifest entry into the current cache version.

        Raises:
            InstallError: If any manifest entry could not be fetched. Nothing
                is cached in that case and the worker becomes redundant.
        """
        if self.state != WorkerState.PARSED:
            raise RegistrationError(
                "Worker already installed", context={"state": self.state.value}
            )

        logger.info("Installing", cache_name=self.config.cache_name)
        self._set_state(WorkerState.INSTALLING)

        existed = await self.storage.has(self.config.cache_name)
        cache = await self.storage.open(self.config.cache_name)
        requests = [Request(url=url) for url in self.config.manifest_urls]
        try:
            await cache.add_all(requests, self.network)
        except CacheStoreError as e:
            if not existed:
                await self.storage.delete(self.config.cache_name)
            self._set_state(WorkerState.REDUNDANT)
            logger.error("Installation failed", **e.context)
            raise InstallError(
                "Failed to precache static assets",
                context={
                    "cache_name": self.config.cache_name,
                    "failed": e.context.get("failed", {}),
                },
            ) from e

        self._set_state(WorkerState.INSTALLED)
        logger.info("Installation complete", assets=len(requests))
        self.skip_waiting()

    def skip_waiting(self) -> None:
        """Activate as soon as installed, without waiting for clients to close."""
        self.skip_waiting_requested = True

    async def activate(self) -> list[str]:
        """Purge stale cache versions and take control of all clients.

        Returns:
            Names of the caches that were deleted.
        """
        if self.state != WorkerState.INSTALLED:
            raise RegistrationError(
                "Only an installed worker can activate", context={"state": self.state.value}
            )

        logger.info("Activating", cache_name=self.config.cache_name)
        self._set_state(WorkerState.ACTIVATING)

        deleted = await purge_stale_caches(self.storage, self.config.cache_name)
        claimed = self.clients.claim(self.worker_id)
        self._set_state(WorkerState.ACTIVATED)
        logger.info("Activated", clients_claimed=claimed, caches_deleted=len(deleted))
        return deleted

    async def handle_fetch(self, request: Request) -> Response:
        """Answer a request through the router."""
        with log_context(request_id=generate_id("req")):
            return await self.router.handle(request)

    async def handle_push(self, data: bytes | str | dict[str, Any]) -> Notification:
        """Show a notification for a push message."""
        payload = parse_push_payload(data)
        return self.notifications.show(payload)

    async def handle_notification_click(self, notification_id: str) -> Client:
        """Close a notification and open/focus the window it points at."""
        return self.notifications.click(notification_id)

    async def terminate(self) -> None:
        """Become redundant, release clients, and flush pending cache writes."""
        await self.router.drain()
        self.clients.release(self.worker_id)
        self._set_state(WorkerState.REDUNDANT)
