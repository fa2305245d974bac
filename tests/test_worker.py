"""
Tests for the worker lifecycle, event dispatch and client registry.
"""

from __future__ import annotations

import pytest

from medicache.cache.store import CacheStorage
from medicache.config import CacheConfig
from medicache.exceptions import InstallError, RegistrationError
from medicache.network import HttpNetwork
from medicache.types import Request, WorkerState
from medicache.worker import (
    ActivateEvent,
    ClientRegistry,
    FetchEvent,
    InstallEvent,
    NotificationClickEvent,
    PushEvent,
    ServiceWorker,
    purge_stale_caches,
)

from tests.conftest import ORIGIN, FakeOrigin


class TestInstall:
    """Test precaching on install."""

    @pytest.mark.asyncio
    async def test_install_precaches_manifest(
        self, worker: ServiceWorker, storage: CacheStorage, cache_config: CacheConfig
    ) -> None:
        await worker.install()

        cache = await storage.open(cache_config.cache_name)
        keys = await cache.keys()
        assert keys == [f"GET {url}" for url in cache_config.manifest_urls]
        assert worker.state == WorkerState.INSTALLED

    @pytest.mark.asyncio
    async def test_install_requests_skip_waiting(self, worker: ServiceWorker) -> None:
        await worker.install()
        assert worker.skip_waiting_requested is True

    @pytest.mark.asyncio
    async def test_install_failure_is_atomic(
        self,
        worker: ServiceWorker,
        storage: CacheStorage,
        fake_origin: FakeOrigin,
        cache_config: CacheConfig,
    ) -> None:
        """Test that a single failing manifest entry aborts the whole install."""
        fake_origin.failing.add("/logo512.png")

        with pytest.raises(InstallError) as exc_info:
            await worker.install()

        assert f"{ORIGIN}/logo512.png" in exc_info.value.context["failed"]
        assert worker.state == WorkerState.REDUNDANT
        assert await storage.has(cache_config.cache_name) is False
        assert await storage.match(Request(url=f"{ORIGIN}/index.html")) is None

    @pytest.mark.asyncio
    async def test_failed_reinstall_keeps_existing_cache(
        self,
        cache_config: CacheConfig,
        storage: CacheStorage,
        network: HttpNetwork,
        fake_origin: FakeOrigin,
    ) -> None:
        first = ServiceWorker(cache_config, storage, network)
        await first.install()

        fake_origin.offline = True
        second = ServiceWorker(cache_config, storage, network)
        with pytest.raises(InstallError):
            await second.install()

        assert await storage.entry_counts() == {cache_config.cache_name: 7}

    @pytest.mark.asyncio
    async def test_install_twice_rejected(self, worker: ServiceWorker) -> None:
        await worker.install()
        with pytest.raises(RegistrationError):
            await worker.install()


class TestActivate:
    """Test activation cleanup and client claiming."""

    @pytest.mark.asyncio
    async def test_activation_deletes_old_versions(
        self, cache_config: CacheConfig, storage: CacheStorage, network: HttpNetwork
    ) -> None:
        """Test that with caches {v1, v2} and current v2, only v2 remains."""
        await storage.open("v1")
        await storage.open("v2")
        config = CacheConfig(
            cache_name="v2",
            origin=cache_config.origin,
            base_url=cache_config.base_url,
            static_assets=cache_config.static_assets,
        )
        worker = ServiceWorker(config, storage, network)
        await worker.install()

        deleted = await worker.activate()

        assert deleted == ["v1"]
        assert await storage.keys() == ["v2"]
        assert worker.state == WorkerState.ACTIVATED

    @pytest.mark.asyncio
    async def test_activation_claims_open_clients(
        self, worker: ServiceWorker, clients: ClientRegistry
    ) -> None:
        dashboard = clients.add(f"{ORIGIN}/dashboard")
        reports = clients.add(f"{ORIGIN}/reports")

        await worker.install()
        await worker.activate()

        assert dashboard.controlled_by == worker.worker_id
        assert reports.controlled_by == worker.worker_id
        assert clients.controller == worker.worker_id

    @pytest.mark.asyncio
    async def test_activate_before_install_rejected(self, worker: ServiceWorker) -> None:
        with pytest.raises(RegistrationError):
            await worker.activate()

    @pytest.mark.asyncio
    async def test_purge_stale_caches(self, storage: CacheStorage) -> None:
        for name in ("medicare-cache-v1", "medicare-cache-v2", "other-app"):
            await storage.open(name)

        deleted = await purge_stale_caches(storage, "medicare-cache-v2")

        assert deleted == ["medicare-cache-v1", "other-app"]
        assert await storage.keys() == ["medicare-cache-v2"]


class TestDispatch:
    """Test the event dispatch table."""

    @pytest.mark.asyncio
    async def test_lifecycle_through_dispatch(self, worker: ServiceWorker) -> None:
        await worker.dispatch(InstallEvent())
        await worker.dispatch(ActivateEvent())
        assert worker.state == WorkerState.ACTIVATED

    @pytest.mark.asyncio
    async def test_fetch_event(self, active_worker: ServiceWorker) -> None:
        response = await active_worker.dispatch(FetchEvent(request=Request(url=f"{ORIGIN}/index.html")))
        assert response.body == b"<html>MediCare</html>"

    @pytest.mark.asyncio
    async def test_push_and_click_events(
        self, active_worker: ServiceWorker, clients: ClientRegistry
    ) -> None:
        notification = await active_worker.dispatch(
            PushEvent(data=b'{"title": "Report approved", "body": "March", "url": "./reports/12"}')
        )
        client = await active_worker.dispatch(
            NotificationClickEvent(notification_id=notification.notification_id)
        )

        assert notification.closed is True
        assert client.url == f"{ORIGIN}/reports/12"
        assert client.controlled_by == active_worker.worker_id

    @pytest.mark.asyncio
    async def test_unknown_event_rejected(self, worker: ServiceWorker) -> None:
        class SyncEvent:
            type = "sync"

        with pytest.raises(RegistrationError):
            await worker.dispatch(SyncEvent())  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_terminate_releases_clients(
        self, active_worker: ServiceWorker, clients: ClientRegistry
    ) -> None:
        page = clients.add(f"{ORIGIN}/dashboard")
        clients.claim(active_worker.worker_id)

        await active_worker.terminate()

        assert active_worker.state == WorkerState.REDUNDANT
        assert page.controlled_by is None
        assert clients.controller is None


class TestClientRegistry:
    """Test page tracking."""

    def test_open_window_focuses_existing(self, clients: ClientRegistry) -> None:
        existing = clients.add(f"{ORIGIN}/reports")
        other = clients.add(f"{ORIGIN}/dashboard", focused=True)

        opened = clients.open_window(f"{ORIGIN}/reports")

        assert opened is existing
        assert existing.focused is True
        assert other.focused is False
        assert len(clients.all()) == 2

    def test_open_window_creates_new_client(self, clients: ClientRegistry) -> None:
        clients.add(f"{ORIGIN}/dashboard", focused=True)

        opened = clients.open_window(f"{ORIGIN}/")

        assert opened.url == f"{ORIGIN}/"
        assert opened.focused is True
        assert len(clients.all()) == 2

    def test_remove(self, clients: ClientRegistry) -> None:
        page = clients.add(f"{ORIGIN}/dashboard")
        clients.remove(page.client_id)
        assert clients.get(page.client_id) is None
