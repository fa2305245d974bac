"""
Worker registration.

Drives a ServiceWorker through install and activation for one scope and
reports the outcome: on_success the first time content is cached for offline
use, on_update when a newer worker replaces one that already controlled
pages. On localhost (and dev tunnels) the worker script is validated first
so a stale worker from a different app gets unregistered.
"""

from __future__ import annotations

import ipaddress
from typing import Callable

from medicache.cache.store import CacheStorage
from medicache.config import CacheConfig
from medicache.exceptions import InstallError, NetworkError
from medicache.logging import get_logger
from medicache.network import Network
from medicache.types import Request
from medicache.worker import ClientRegistry, ServiceWorker

logger = get_logger(__name__)

TUNNEL_HOST_SUFFIXES = (".ngrok.io", ".ngrok-free.app")

RegistrationCallback = Callable[["Registration"], None]


def is_localhost(hostname: str) -> bool:
    """Development hosts: localhost, [::1], 127.0.0.0/8, or a dev tunnel."""
    if hostname in ("localhost", "[::1]", "::1"):
        return True
    if any(suffix in hostname for suffix in TUNNEL_HOST_SUFFIXES):
        return True
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return address.version == 4 and address in ipaddress.ip_network("127.0.0.0/8")


def registration_enabled(hostname: str, production: bool) -> bool:
    """Workers are registered in production builds and behind tunnels."""
    return production or "ngrok" in hostname


class Registration:
    """Registration of the offline worker for one scope."""

    def __init__(
        self,
        config: CacheConfig,
        storage: CacheStorage,
        network: Network,
        clients: ClientRegistry | None = None,
        on_success: RegistrationCallback | None = None,
        on_update: RegistrationCallback | None = None,
    ) -> None:
        self.config = config
        self.scope = config.base_url
        self.storage = storage
        self.network = network
        self.clients = clients if clients is not None else ClientRegistry()
        self.on_success = on_success
        self.on_update = on_update
        self.installing: ServiceWorker | None = None
        self.waiting: ServiceWorker | None = None
        self.active: ServiceWorker | None = None

    async def start(self, script_url: str, hostname: str) -> ServiceWorker | None:
        """Register the worker, validating its script first on dev hosts."""
        if is_localhost(hostname):
            return await self.check_valid_service_worker(script_url)
        return await self.register()

    async def register(self) -> ServiceWorker | None:
        """Install and activate a new worker version.

        Install failures are logged and leave any active worker in place.

        Returns:
            The newly active worker, or None if installation failed.
        """
        worker = ServiceWorker(self.config, self.storage, self.network, self.clients)
        had_controller = self.clients.controller is not None
        self.installing = worker

        try:
            await worker.install()
        except InstallError as e:
            logger.error("Error during service worker registration", error=str(e))
            self.installing = None
            return None

        self.installing = None
        self.waiting = worker

        if had_controller:
            logger.info("New content is available and will be used by all clients")
            if self.on_update:
                self.on_update(self)
        else:
            logger.info("Content is cached for offline use")
            if self.on_success:
                self.on_success(self)

        if worker.skip_waiting_requested:
            await self._promote(worker)
        return worker

    async def _promote(self, worker: ServiceWorker) -> None:
        previous = self.active
        self.waiting = None
        if previous is not None:
            await previous.terminate()
        self.active = worker
        await worker.activate()

    async def check_valid_service_worker(self, script_url: str) -> ServiceWorker | None:
        """Register only if the worker script exists and is JavaScript.

        A missing script (404) or a non-JavaScript content type means the
        scope belongs to a different app, so the current worker is dropped.
        """
        request = Request(url=script_url, headers={"Service-Worker": "script"})
        try:
            response = await self.network.fetch(request)
        except NetworkError:
            logger.info("No internet connection found. App is running in offline mode.")
            return None

        content_type = response.content_type
        if response.status == 404 or (
            content_type is not None and "javascript" not in content_type
        ):
            logger.warning(
                "Worker script not found, unregistering",
                url=script_url,
                status=response.status,
                content_type=content_type,
            )
            await self.unregister()
            return None

        return await self.register()

    async def unregister(self) -> bool:
        """Retire the active worker.

        Returns:
            True if a worker was active.
        """
        if self.active is None:
            return False
        await self.active.terminate()
        logger.info("Unregistered worker", worker_id=self.active.worker_id)
        self.active = None
        return True
