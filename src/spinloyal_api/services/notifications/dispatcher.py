"""Best-effort, queue-backed dispatch of notification events."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable
from uuid import UUID

from loguru import logger

from spinloyal_api.core.settings import settings
from spinloyal_api.observability.rewards import RewardObservabilityStore, get_reward_store
from spinloyal_api.services.errors import ExternalServiceError
from spinloyal_api.services.notifications.backend import NotificationBackend, NotificationEvent


_STOP = object()


class NotificationDispatcher:
    """Decouple messaging from the transactional core.

    ``emit`` never blocks and never raises; a background task drains the
    queue through the backend. Delivery failures are logged and counted.
    """

    def __init__(
        self,
        backend: NotificationBackend,
        *,
        queue_size: int | None = None,
        event_types: Iterable[str] | None = None,
        observability: RewardObservabilityStore | None = None,
    ) -> None:
        self.backend = backend
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size or settings.notification_queue_size)
        allowed = set(event_types if event_types is not None else settings.notification_event_types)
        self._event_types = allowed or None
        self._observability = observability or get_reward_store()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def emit(self, merchant_id: UUID | str, event_type: str, payload: Dict[str, Any]) -> bool:
        """Queue an event; returns False when it is filtered out or the queue is full."""

        if self._event_types is not None and event_type not in self._event_types:
            return False
        event = NotificationEvent(merchant_id=str(merchant_id), event_type=event_type, payload=payload)
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._observability.record_notification("dropped")
            logger.warning(
                "Notification queue full; dropping event",
                merchant_id=event.merchant_id,
                event_type=event_type,
            )
            return False
        return True

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info("Notification dispatcher started", backend=type(self.backend).__name__)

    async def stop(self) -> None:
        """Deliver what is already queued, then stop the background task."""

        if not self._task:
            return
        await self._queue.put(_STOP)
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Notification dispatcher stopped")

    async def drain(self) -> int:
        """Deliver every queued event inline; used when no background task runs."""

        delivered = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return delivered
            try:
                if event is _STOP:
                    continue
                if await self._deliver(event):
                    delivered += 1
            finally:
                self._queue.task_done()

    async def _run_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                if event is _STOP:
                    return
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: NotificationEvent) -> bool:
        try:
            await self.backend.deliver(event)
        except ExternalServiceError as exc:
            self._observability.record_notification("failed")
            logger.warning(
                "Notification delivery failed",
                merchant_id=event.merchant_id,
                event_type=event.event_type,
                error=str(exc),
            )
            return False
        except Exception as exc:  # pragma: no cover - unexpected backend failure
            self._observability.record_notification("failed")
            logger.exception(
                "Notification backend raised unexpectedly",
                merchant_id=event.merchant_id,
                event_type=event.event_type,
                error=str(exc),
            )
            return False
        self._observability.record_notification("delivered")
        return True


__all__ = ["NotificationDispatcher"]
