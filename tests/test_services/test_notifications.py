"""Tests for draining the transition outbox into a notifier."""

from __future__ import annotations

import asyncio
import json
import uuid
from unittest.mock import AsyncMock

import httpx
import pytest

from tradie_escrow.domain.enums import NotificationKind
from tradie_escrow.domain.models import TransitionRecord
from tradie_escrow.infrastructure.memory import InMemoryOutbox
from tradie_escrow.services.notification_service import (
    HttpNotifier,
    LoggingNotifier,
    NotificationDispatcher,
    create_notifier,
)


def _record(kind: NotificationKind = NotificationKind.FUNDS_RELEASED) -> TransitionRecord:
    return TransitionRecord(kind=kind, job_id=uuid.uuid4(), payload={"amount": 1_000})


class TestDispatcher:
    @pytest.mark.asyncio
    async def test_drain_delivers_everything(self) -> None:
        outbox = InMemoryOutbox()
        notifier = LoggingNotifier()
        for kind in (NotificationKind.PAYMENT_HELD, NotificationKind.FUNDS_RELEASED):
            await outbox.publish(_record(kind))

        delivered = await NotificationDispatcher(outbox, notifier).drain()

        assert delivered == 2
        assert [kind for kind, _, _ in notifier.sent] == [
            NotificationKind.PAYMENT_HELD,
            NotificationKind.FUNDS_RELEASED,
        ]
        assert outbox.pending() == 0

    @pytest.mark.asyncio
    async def test_failed_delivery_is_not_raised(self) -> None:
        notifier = AsyncMock()
        notifier.notify.side_effect = RuntimeError("smtp down")
        dispatcher = NotificationDispatcher(InMemoryOutbox(), notifier)

        assert await dispatcher.deliver(_record()) is False

    @pytest.mark.asyncio
    async def test_run_until_stopped(self) -> None:
        outbox = InMemoryOutbox()
        notifier = LoggingNotifier()
        dispatcher = NotificationDispatcher(outbox, notifier, poll_timeout=0.01)

        task = asyncio.create_task(dispatcher.run())
        await outbox.publish(_record())
        for _ in range(50):
            if notifier.sent:
                break
            await asyncio.sleep(0.01)
        dispatcher.stop()
        await asyncio.wait_for(task, timeout=1)

        assert len(notifier.sent) == 1


class TestHttpNotifier:
    @pytest.mark.asyncio
    async def test_posts_json(self) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(202)

        notifier = HttpNotifier("https://relay.example/notify")
        notifier._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        record = _record()

        await notifier.notify(record.kind, record.job_id, record.payload)
        await notifier.aclose()

        assert seen == [
            {"kind": "funds_released", "job_id": str(record.job_id), "payload": {"amount": 1_000}}
        ]

    @pytest.mark.asyncio
    async def test_error_status_raises(self) -> None:
        notifier = HttpNotifier("https://relay.example/notify")
        notifier._client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(500))
        )
        record = _record()
        with pytest.raises(httpx.HTTPStatusError):
            await notifier.notify(record.kind, record.job_id, record.payload)
        await notifier.aclose()


class TestFactory:
    def test_logging_notifier_by_default(self, test_settings) -> None:
        assert isinstance(create_notifier(test_settings), LoggingNotifier)

    @pytest.mark.asyncio
    async def test_http_notifier_when_url_set(self, test_settings) -> None:
        settings = test_settings.model_copy(update={"notifier_webhook_url": "https://relay.example"})
        notifier = create_notifier(settings)
        assert isinstance(notifier, HttpNotifier)
        await notifier.aclose()
