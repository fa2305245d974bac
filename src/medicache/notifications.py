"""
Push message and notification handling.

A push carries a JSON payload {title, body, url?}. It is shown as a
notification with the app icon; clicking the notification closes it and
opens (or focuses) a window at the payload URL.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import orjson
from pydantic import BaseModel, ValidationError

from medicache.config import CacheConfig
from medicache.exceptions import PushPayloadError
from medicache.logging import get_logger
from medicache.types import Client, Notification, generate_id

if TYPE_CHECKING:
    from medicache.worker import ClientRegistry

logger = get_logger(__name__)

DEFAULT_URL = "./"


class PushPayload(BaseModel):
    """Payload delivered by the push service."""

    title: str
    body: str
    url: str | None = None


def parse_push_payload(data: bytes | str | dict[str, Any]) -> PushPayload:
    """Parse a push message body.

    Raises:
        PushPayloadError: If the body is not JSON or does not match the schema.
    """
    try:
        raw = data if isinstance(data, dict) else orjson.loads(data)
    except orjson.JSONDecodeError as e:
        raise PushPayloadError("Push payload is not valid JSON", context={"error": str(e)}) from e

    try:
        return PushPayload.model_validate(raw)
    except ValidationError as e:
        raise PushPayloadError(
            "Push payload does not match schema",
            context={"errors": [err["msg"] for err in e.errors()]},
        ) from e


class NotificationCenter:
    """Displays notifications and handles clicks on them."""

    def __init__(self, config: CacheConfig, clients: ClientRegistry) -> None:
        self.config = config
        self.clients = clients
        self._notifications: dict[str, Notification] = {}

    def show(self, payload: PushPayload) -> Notification:
        """Display a notification for a push payload."""
        notification = Notification(
            notification_id=generate_id("ntf"),
            title=payload.title,
            body=payload.body,
            icon=self.config.notification_icon,
            badge=self.config.notification_badge,
            vibrate=self.config.vibrate_pattern,
            data={"url": payload.url or DEFAULT_URL},
        )
        self._notifications[notification.notification_id] = notification
        logger.info("Showing notification", notification_id=notification.notification_id, title=payload.title)
        return notification

    def get(self, notification_id: str) -> Notification | None:
        return self._notifications.get(notification_id)

    def open_notifications(self) -> list[Notification]:
        """Notifications that have not been closed, oldest first."""
        return [n for n in self._notifications.values() if not n.closed]

    def click(self, notification_id: str) -> Client:
        """Close a notification and open a window at its URL.

        Raises:
            KeyError: If the notification is unknown.
        """
        notification = self._notifications[notification_id]
        notification.close()
        url = self.config.resolve(notification.data.get("url") or DEFAULT_URL)
        logger.info("Notification clicked", notification_id=notification_id, url=url)
        return self.clients.open_window(url)
