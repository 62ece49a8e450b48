"""Notification Service: drains the transition outbox into a Notifier.

The orchestrator only publishes TransitionRecords; delivery happens here,
in a background task, so a slow or failing email/SMS provider never holds
up (or fails) a financial transition.

    dispatcher = NotificationDispatcher(outbox, create_notifier(settings))
    task = asyncio.create_task(dispatcher.run())
    ...
    dispatcher.stop()
    await task
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import httpx

from tradie_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from tradie_escrow.config import Settings
    from tradie_escrow.domain.enums import NotificationKind
    from tradie_escrow.domain.models import TransitionRecord
    from tradie_escrow.domain.ports import Notifier, TransitionOutbox

logger = get_logger(__name__)


class LoggingNotifier:
    """Notifier that only writes a log entry (development and tests)."""

    def __init__(self) -> None:
        self.sent: list[tuple[NotificationKind, uuid.UUID, dict[str, Any]]] = []

    async def notify(
        self, kind: NotificationKind, job_id: uuid.UUID, payload: dict[str, Any]
    ) -> None:
        self.sent.append((kind, job_id, payload))
        logger.info("notification.sent", kind=kind, job_id=str(job_id), **payload)


class HttpNotifier:
    """Notifier that POSTs each notification to an email/SMS relay."""

    def __init__(self, url: str, timeout: float = 5.0) -> None:
        self.url = url
        self._client = httpx.AsyncClient(timeout=timeout)

    async def notify(
        self, kind: NotificationKind, job_id: uuid.UUID, payload: dict[str, Any]
    ) -> None:
        response = await self._client.post(
            self.url,
            json={"kind": str(kind), "job_id": str(job_id), "payload": payload},
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()


def create_notifier(settings: Settings) -> Notifier:
    if settings.notifier_webhook_url:
        return HttpNotifier(settings.notifier_webhook_url, settings.notifier_timeout_seconds)
    return LoggingNotifier()


class NotificationDispatcher:
    """Consumes the outbox and hands each record to the notifier."""

    def __init__(
        self,
        outbox: TransitionOutbox,
        notifier: Notifier,
        poll_timeout: float = 1.0,
    ) -> None:
        self._outbox = outbox
        self._notifier = notifier
        self._poll_timeout = poll_timeout
        self._stopping = asyncio.Event()

    async def deliver(self, record: TransitionRecord) -> bool:
        """Send one record. Failures are logged, never raised."""
        try:
            await self._notifier.notify(record.kind, record.job_id, record.payload)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "notification.delivery_failed",
                kind=record.kind,
                job_id=str(record.job_id),
                error=str(exc),
            )
            return False
        return True

    async def drain(self, poll_timeout: float = 0.01) -> int:
        """Deliver everything currently queued; returns the number delivered."""
        delivered = 0
        while (record := await self._outbox.consume(timeout=poll_timeout)) is not None:
            if await self.deliver(record):
                delivered += 1
        return delivered

    async def run(self) -> None:
        """Deliver records until stop() is called."""
        logger.info("notification.dispatcher_started")
        while not self._stopping.is_set():
            try:
                record = await self._outbox.consume(timeout=self._poll_timeout)
            except Exception as exc:  # noqa: BLE001
                logger.error("notification.outbox_unavailable", error=str(exc))
                await asyncio.sleep(self._poll_timeout)
                continue
            if record is not None:
                await self.deliver(record)
        logger.info("notification.dispatcher_stopped")

    def stop(self) -> None:
        self._stopping.set()
