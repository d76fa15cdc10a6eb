"""Notification service package."""

from .backend import (
    InMemoryNotificationBackend,
    NotificationBackend,
    NotificationEvent,
    WebhookNotificationBackend,
    build_backend_from_settings,
)
from .dispatcher import NotificationDispatcher

__all__ = [
    "InMemoryNotificationBackend",
    "NotificationBackend",
    "NotificationDispatcher",
    "NotificationEvent",
    "WebhookNotificationBackend",
    "build_backend_from_settings",
]
