"""
Configuration management using pydantic-settings.

Loads configuration from environment variables and .env files.
Validates the cache policy and exposes it as an explicit, immutable
CacheConfig value that is passed to the router and worker.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Literal
from urllib.parse import urljoin, urlparse

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from medicache.exceptions import ConfigurationError

DEFAULT_STATIC_ASSETS = [
    "./",
    "./index.html",
    "./manifest.json",
    "./logo192.png",
    "./logo512.png",
    "./favicon.ico",
    "./offline.html",
]


@dataclass(frozen=True)
class CacheConfig:
    """Versioned cache policy handed to the router, worker and registration.

    Bumping ``cache_name`` is the only way to invalidate previously cached
    assets: the next activation deletes every cache with a different name.
    """

    cache_name: str
    origin: str
    base_url: str
    static_assets: tuple[str, ...]
    api_prefix: str = "/api/"
    tunnel_host_pattern: str = "ngrok"
    offline_page: str = "./offline.html"
    placeholder_image: str = "./logo192.png"
    notification_icon: str = "./logo192.png"
    notification_badge: str = "./favicon.ico"
    vibrate_pattern: tuple[int, ...] = (100, 50, 100)
    script_path: str = "./service-worker.js"

    def resolve(self, path: str) -> str:
        """Resolve a root-relative asset path against the base URL."""
        return urljoin(self.base_url, path)

    @property
    def manifest_urls(self) -> list[str]:
        """Absolute URLs of the static asset manifest, in order."""
        return [self.resolve(path) for path in self.static_assets]

    @property
    def offline_url(self) -> str:
        return self.resolve(self.offline_page)

    @property
    def placeholder_url(self) -> str:
        return self.resolve(self.placeholder_image)

    @property
    def script_url(self) -> str:
        return self.resolve(self.script_path)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Optional:
        ORIGIN: Origin the application shell is served from
        BASE_PATH: Path the shell is mounted at (static assets resolve against it)
        CACHE_PREFIX / CACHE_VERSION: Cache version tag is "{prefix}-v{version}"
        STATIC_ASSETS: JSON list of paths precached on install
        TUNNEL_HOST_PATTERN: Host fragment treated as same-origin (dev tunnels)
        API_PREFIX: Path prefix of requests that always bypass the cache
        OFFLINE_PAGE: Fallback document for failed navigations
        PLACEHOLDER_IMAGE: Fallback for failed image requests
        SERVICE_WORKER_SCRIPT: Worker script checked before registering on dev hosts
        PRODUCTION: Register the worker on every host, not only dev tunnels
        REQUEST_TIMEOUT: Upstream request timeout in seconds
        CACHE_DIR: Directory for the cache store
        LOG_LEVEL: Logging level
        LOG_FILE: Optional JSON-lines log file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    ORIGIN: str = Field(
        default="http://localhost:3000",
        description="Origin of the application shell (scheme://host[:port])",
    )
    BASE_PATH: str = Field(default="/", description="Mount path of the application")

    CACHE_PREFIX: str = Field(default="medicare-cache", min_length=1)
    CACHE_VERSION: int = Field(default=2, ge=1, description="Cache schema version")

    STATIC_ASSETS: list[str] = Field(
        default_factory=lambda: list(DEFAULT_STATIC_ASSETS),
        description="Paths precached on install",
    )
    TUNNEL_HOST_PATTERN: str = Field(
        default="ngrok", description="Host fragment of an allow-listed tunnel proxy"
    )
    API_PREFIX: str = Field(default="/api/", description="Cache-bypassing API prefix")
    OFFLINE_PAGE: str = Field(default="./offline.html")
    PLACEHOLDER_IMAGE: str = Field(default="./logo192.png")
    NOTIFICATION_ICON: str = Field(default="./logo192.png")
    NOTIFICATION_BADGE: str = Field(default="./favicon.ico")
    SERVICE_WORKER_SCRIPT: str = Field(default="./service-worker.js")
    PRODUCTION: bool = Field(
        default=True, description="Production build (registration outside tunnels)"
    )

    REQUEST_TIMEOUT: float = Field(
        default=30.0, gt=0.0, description="Upstream request timeout in seconds"
    )

    CACHE_DIR: Path = Field(default=Path(".cache"), description="Cache directory")

    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="JSON-lines log file")

    @field_validator("ORIGIN")
    @classmethod
    def validate_origin(cls, v: str) -> str:
        """Origin must be an http(s) scheme and host with no path."""
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("ORIGIN must look like http(s)://host[:port]")
        if parsed.path not in ("", "/") or parsed.query or parsed.fragment:
            raise ValueError("ORIGIN must not contain a path, query or fragment")
        return f"{parsed.scheme}://{parsed.netloc}"

    @field_validator("BASE_PATH")
    @classmethod
    def validate_base_path(cls, v: str) -> str:
        """Normalise the base path to start and end with a slash."""
        v = "/" + v.strip("/")
        return v if v == "/" else v + "/"

    @field_validator("API_PREFIX")
    @classmethod
    def validate_api_prefix(cls, v: str) -> str:
        """API prefix must be a slash-delimited path segment like /api/."""
        if not (v.startswith("/") and v.endswith("/") and len(v) > 2):
            raise ValueError("API_PREFIX must start and end with '/' (e.g. /api/)")
        return v

    @field_validator("STATIC_ASSETS")
    @classmethod
    def validate_static_assets(cls, v: list[str]) -> list[str]:
        """Manifest must be non-empty and free of duplicates."""
        if not v:
            raise ValueError("STATIC_ASSETS must list at least one path")
        if len(set(v)) != len(v):
            raise ValueError("STATIC_ASSETS must not contain duplicates")
        return v

    @model_validator(mode="after")
    def validate_fallbacks_are_precached(self) -> Settings:
        """Fallback responses are served from the cache, so they must be precached."""
        missing = [
            name
            for name, path in (
                ("OFFLINE_PAGE", self.OFFLINE_PAGE),
                ("PLACEHOLDER_IMAGE", self.PLACEHOLDER_IMAGE),
            )
            if path not in self.STATIC_ASSETS
        ]
        if missing:
            raise ValueError(
                f"{', '.join(missing)} must be listed in STATIC_ASSETS"
            )
        return self

    @property
    def cache_name(self) -> str:
        """Current cache version tag."""
        return f"{self.CACHE_PREFIX}-v{self.CACHE_VERSION}"

    @property
    def base_url(self) -> str:
        """Absolute URL the static assets resolve against."""
        return f"{self.ORIGIN}{self.BASE_PATH}"

    def cache_config(self) -> CacheConfig:
        """Build the immutable cache policy for this configuration."""
        return CacheConfig(
            cache_name=self.cache_name,
            origin=self.ORIGIN,
            base_url=self.base_url,
            static_assets=tuple(self.STATIC_ASSETS),
            api_prefix=self.API_PREFIX,
            tunnel_host_pattern=self.TUNNEL_HOST_PATTERN,
            offline_page=self.OFFLINE_PAGE,
            placeholder_image=self.PLACEHOLDER_IMAGE,
            notification_icon=self.NOTIFICATION_ICON,
            notification_badge=self.NOTIFICATION_BADGE,
            script_path=self.SERVICE_WORKER_SCRIPT,
        )

    def ensure_directories(self) -> None:
        """Create the cache directory if it doesn't exist."""
        self.CACHE_DIR.mkdir(parents=True, exist_ok=True)

    def display(self) -> dict[str, str | int | float | None]:
        """Return settings for display."""
        return {
            "ORIGIN": self.ORIGIN,
            "BASE_PATH": self.BASE_PATH,
            "CACHE_NAME": self.cache_name,
            "STATIC_ASSETS": ", ".join(self.STATIC_ASSETS),
            "TUNNEL_HOST_PATTERN": self.TUNNEL_HOST_PATTERN,
            "API_PREFIX": self.API_PREFIX,
            "OFFLINE_PAGE": self.OFFLINE_PAGE,
            "PLACEHOLDER_IMAGE": self.PLACEHOLDER_IMAGE,
            "SERVICE_WORKER_SCRIPT": self.SERVICE_WORKER_SCRIPT,
            "PRODUCTION": str(self.PRODUCTION),
            "REQUEST_TIMEOUT": self.REQUEST_TIMEOUT,
            "CACHE_DIR": str(self.CACHE_DIR),
            "LOG_LEVEL": self.LOG_LEVEL,
            "LOG_FILE": str(self.LOG_FILE) if self.LOG_FILE else None,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If settings are invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()


def load_settings() -> Settings:
    """Load settings, reporting validation failures as ConfigurationError.

    Raises:
        ConfigurationError: If any setting is invalid.
    """
    try:
        return get_settings()
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in error['loc']) or 'settings'}: {error['msg']}"
            for error in e.errors()
        ]
        raise ConfigurationError("Invalid configuration", context={"errors": errors}) from e
