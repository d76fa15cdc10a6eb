"""Delivery backends for reward engine notifications."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Protocol

import httpx

from spinloyal_api.core.clock import utcnow
from spinloyal_api.core.settings import settings
from spinloyal_api.services.errors import ExternalServiceError


@dataclass(slots=True)
class NotificationEvent:
    """A committed domain event headed to the messaging layer."""

    merchant_id: str
    event_type: str
    payload: Dict[str, Any]
    occurred_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> Dict[str, Any]:
        body = asdict(self)
        body["occurred_at"] = self.occurred_at.isoformat()
        return body


class NotificationBackend(Protocol):
    """Minimal protocol for pushing events to a messaging provider."""

    async def deliver(self, event: NotificationEvent) -> None:
        ...


@dataclass
class InMemoryNotificationBackend:
    """Backend that keeps delivered events in memory (local runs and tests)."""

    delivered: List[NotificationEvent] = field(default_factory=list)
    fail_with: Exception | None = None

    async def deliver(self, event: NotificationEvent) -> None:
        if self.fail_with is not None:
            raise ExternalServiceError(str(self.fail_with)) from self.fail_with
        self.delivered.append(event)


class WebhookNotificationBackend:
    """POST each event as JSON to a webhook (WhatsApp relay, CRM, etc.)."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout_seconds
        self._http_client = http_client

    async def deliver(self, event: NotificationEvent) -> None:
        close_client = False
        client = self._http_client
        if client is None:
            client = httpx.AsyncClient(timeout=self._timeout)
            close_client = True

        try:
            response = await client.post(self._url, json=event.as_dict())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalServiceError(
                f"Webhook delivery of {event.event_type} failed: {exc}"
            ) from exc
        finally:
            if close_client:
                await client.aclose()


def build_backend_from_settings() -> NotificationBackend:
    if settings.notification_webhook_url:
        return WebhookNotificationBackend(
            settings.notification_webhook_url,
            timeout_seconds=settings.notification_timeout_seconds,
        )
    return InMemoryNotificationBackend()


__all__ = [
    "InMemoryNotificationBackend",
    "NotificationBackend",
    "NotificationEvent",
    "WebhookNotificationBackend",
    "build_backend_from_settings",
]
