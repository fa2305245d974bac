"""
Core types for the offline cache router.

This module defines the fundamental data structures used throughout the system:
- Enums for request classes, fetch modes, response types and worker states
- Frozen dataclasses for requests and responses (immutable, cloneable)
- Client and notification records
- Helper functions for ID generation and timestamps
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import urldefrag, urlparse

from uuid6 import uuid7


def generate_id(prefix: str = "") -> str:
    """Generate a time-ordered unique ID using UUID7.

    Args:
        prefix: Optional prefix for the ID (e.g., "req", "sw", "client")

    Returns:
        A unique ID string, optionally prefixed.
    """
    uid = str(uuid7())
    return f"{prefix}_{uid}" if prefix else uid


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def origin_of(url: str) -> str:
    """Return the scheme://host[:port] origin of a URL."""
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


class RequestClass(str, Enum):
    """How the router treats an intercepted request."""

    CROSS_ORIGIN_IGNORED = "cross_origin_ignored"
    NON_GET_PASSTHROUGH = "non_get_passthrough"
    API_PASSTHROUGH = "api_passthrough"
    NAVIGATION = "navigation"
    ASSET = "asset"

    @property
    def cacheable(self) -> bool:
        """Whether the router guarantees a response for this class."""
        return self in (RequestClass.NAVIGATION, RequestClass.ASSET)


class RequestMode(str, Enum):
    """Fetch mode of a request."""

    NAVIGATE = "navigate"
    SAME_ORIGIN = "same-origin"
    NO_CORS = "no-cors"
    CORS = "cors"


class ResponseType(str, Enum):
    """Response tainting, as seen by the requesting page."""

    BASIC = "basic"  # Same-origin response
    CORS = "cors"  # Cross-origin response readable by the page
    OPAQUE = "opaque"  # Cross-origin no-cors response
    ERROR = "error"


class WorkerState(str, Enum):
    """Lifecycle states of a service worker."""

    PARSED = "parsed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    REDUNDANT = "redundant"


@dataclass(frozen=True)
class Request:
    """An outbound request issued by the application shell."""

    url: str
    method: str = "GET"
    mode: RequestMode = RequestMode.CORS
    destination: str = ""  # "document", "image", "script", "style", ...
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", self.method.upper())
        if not isinstance(self.mode, RequestMode):
            object.__setattr__(self, "mode", RequestMode(self.mode))

    @property
    def key(self) -> str:
        """Request identity used by the cache store (method + URL)."""
        url, _ = urldefrag(self.url)
        return f"{self.method} {url}"

    def clone(self) -> Request:
        """Return an independent copy of this request."""
        return replace(self, headers=dict(self.headers))


@dataclass(frozen=True)
class Response:
    """A captured HTTP response."""

    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    url: str = ""
    type: ResponseType = ResponseType.BASIC

    @property
    def ok(self) -> bool:
        """True for 2xx statuses."""
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str | None:
        """Content-Type header, looked up case-insensitively."""
        for name, value in self.headers.items():
            if name.lower() == "content-type":
                return value
        return None

    @property
    def text(self) -> str:
        """Body decoded as UTF-8."""
        return self.body.decode("utf-8", errors="replace")

    def clone(self) -> Response:
        """Return an independent copy of this response."""
        return replace(self, headers=dict(self.headers))

    @classmethod
    def plain_text(cls, status: int, text: str) -> Response:
        """Synthesize a plain-text response."""
        return cls(
            status=status,
            body=text.encode("utf-8"),
            headers={"Content-Type": "text/plain"},
        )


@dataclass
class Client:
    """A page (window) that a worker can control."""

    client_id: str
    url: str
    focused: bool = False
    controlled_by: str | None = None  # worker_id of the controlling worker

    @classmethod
    def create(cls, url: str, focused: bool = False) -> Client:
        """Create a new uncontrolled client."""
        return cls(client_id=generate_id("client"), url=url, focused=focused)


@dataclass
class Notification:
    """A notification displayed in response to a push message."""

    notification_id: str
    title: str
    body: str
    icon: str
    badge: str
    vibrate: tuple[int, ...] = (100, 50, 100)
    data: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    closed: bool = False

    def close(self) -> None:
        """Dismiss the notification."""
        self.closed = True

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "notification_id": self.notification_id,
            "title": self.title,
            "body": self.body,
            "icon": self.icon,
            "badge": self.badge,
            "vibrate": list(self.vibrate),
            "data": dict(self.data),
            "created_at": self.created_at.isoformat(),
            "closed": self.closed,
        }
