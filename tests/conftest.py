"""
Pytest configuration and fixtures for offline cache router tests.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncGenerator, Generator
from unittest.mock import patch
from urllib.parse import urlparse

import httpx
import pytest

from medicache.cache.store import CacheStorage
from medicache.config import CacheConfig, Settings, clear_settings_cache
from medicache.network import HttpNetwork
from medicache.worker import ClientRegistry, ServiceWorker

ORIGIN = "http://localhost:3000"

PNG_BYTES = b"\x89PNG\r\n\x1a\n-logo192-"


@dataclass
class FakeOrigin:
    """In-memory upstream served through httpx.MockTransport.

    Routes are keyed by path regardless of host. Set ``offline`` to make
    every request fail with a connection error, or add paths to
    ``failing`` to break individual ones.
    """

    routes: dict[str, tuple[int, bytes, str]] = field(default_factory=dict)
    offline: bool = False
    failing: set[str] = field(default_factory=set)
    calls: list[tuple[str, str]] = field(default_factory=list)

    def serve(self, path: str, body: bytes | str, content_type: str = "text/plain", status: int = 200) -> None:
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.routes[path] = (status, body, content_type)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.method, str(request.url)))
        path = urlparse(str(request.url)).path or "/"
        if self.offline or path in self.failing:
            raise httpx.ConnectError("connection refused", request=request)
        if path not in self.routes:
            return httpx.Response(404, text="Not Found")
        status, body, content_type = self.routes[path]
        return httpx.Response(status, content=body, headers={"Content-Type": content_type})

    def calls_to(self, path: str) -> int:
        return sum(1 for _, url in self.calls if (urlparse(url).path or "/") == path)


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def mock_env_vars(temp_dir: Path) -> Generator[dict[str, str], None, None]:
    """Provide environment variables for a local development origin."""
    env_vars = {
        "ORIGIN": ORIGIN,
        "BASE_PATH": "/",
        "CACHE_PREFIX": "medicare-cache",
        "CACHE_VERSION": "2",
        "TUNNEL_HOST_PATTERN": "ngrok",
        "API_PREFIX": "/api/",
        "CACHE_DIR": str(temp_dir / "cache"),
        "LOG_LEVEL": "DEBUG",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str]) -> Generator[Settings, None, None]:
    """Provide a Settings instance with mock configuration."""
    clear_settings_cache()
    from medicache.config import get_settings

    settings = get_settings()
    settings.ensure_directories()
    yield settings
    clear_settings_cache()


@pytest.fixture
def cache_config(mock_settings: Settings) -> CacheConfig:
    """Cache policy for the mock settings (tag medicare-cache-v2)."""
    return mock_settings.cache_config()


@pytest.fixture
def fake_origin() -> FakeOrigin:
    """Upstream with the app shell, a few assets and an API endpoint."""
    origin = FakeOrigin()
    origin.serve("/", "<html>MediCare</html>", "text/html")
    origin.serve("/index.html", "<html>MediCare</html>", "text/html")
    origin.serve("/manifest.json", '{"short_name": "MediCare"}', "application/json")
    origin.serve("/logo192.png", PNG_BYTES, "image/png")
    origin.serve("/logo512.png", b"\x89PNG-logo512-", "image/png")
    origin.serve("/favicon.ico", b"ICO", "image/x-icon")
    origin.serve("/offline.html", "<html>You are offline</html>", "text/html")
    origin.serve("/static/js/main.js", "console.log('app');", "application/javascript")
    origin.serve("/static/css/main.css", "body{}", "text/css")
    origin.serve("/dashboard", "<html>Dashboard</html>", "text/html")
    origin.serve("/api/facilities", '[{"id": 1}]', "application/json")
    origin.serve("/service-worker.js", "self.addEventListener('fetch', () => {});", "application/javascript")
    return origin


@pytest.fixture
async def storage(temp_dir: Path) -> AsyncGenerator[CacheStorage, None]:
    """Create an initialized cache storage for testing."""
    store = CacheStorage(temp_dir / "cache")
    await store.init()
    yield store
    await store.close()


@pytest.fixture
async def network(fake_origin: FakeOrigin) -> AsyncGenerator[HttpNetwork, None]:
    """HttpNetwork wired to the fake origin."""
    net = HttpNetwork(ORIGIN, transport=httpx.MockTransport(fake_origin.handler))
    yield net
    await net.close()


@pytest.fixture
def clients() -> ClientRegistry:
    return ClientRegistry()


@pytest.fixture
def worker(
    cache_config: CacheConfig,
    storage: CacheStorage,
    network: HttpNetwork,
    clients: ClientRegistry,
) -> ServiceWorker:
    """A freshly parsed worker."""
    return ServiceWorker(cache_config, storage, network, clients)


@pytest.fixture
async def active_worker(worker: ServiceWorker) -> AsyncGenerator[ServiceWorker, None]:
    """A worker that has installed and activated."""
    await worker.install()
    await worker.activate()
    yield worker
    await worker.router.drain()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()
