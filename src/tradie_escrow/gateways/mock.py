"""Deterministic in-memory payment gateway.

Used by the test suite, the simulation script and ``GATEWAY_MODE=mock``.
References are sequential (``pi_mock_1``, ``pi_mock_2``, ...), signatures
use the same scheme as the real processor, and failures or slowness can be
injected per operation:

    gateway = MockGateway(auto_confirm=False)
    gateway.fail_next("capture")
    gateway.latency["refund"] = 5.0
"""

from __future__ import annotations

import asyncio
import itertools
import json
from dataclasses import dataclass, field
from typing import Any

from tradie_escrow.domain.exceptions import GatewayError
from tradie_escrow.domain.models import GatewayEvent, HoldResult
from tradie_escrow.gateways.signing import parse_event, sign_payload, verify_signature
from tradie_escrow.logging_config import get_logger

logger = get_logger(__name__)

OPERATIONS = ("create_hold", "capture", "refund")


@dataclass
class MockIntent:
    """Gateway-side view of one hold."""

    reference: str
    amount: int
    currency: str
    metadata: dict[str, str]
    status: str = "requires_payment_method"
    client_token: str = ""
    calls: list[str] = field(default_factory=list)


class MockGateway:
    """PaymentGateway implementation with no network access."""

    def __init__(
        self,
        webhook_secret: str = "whsec_local_development",
        auto_confirm: bool = True,
        tolerance: int = 300,
        requires_payout_account: bool = False,
    ) -> None:
        self.webhook_secret = webhook_secret
        self.auto_confirm = auto_confirm
        self.tolerance = tolerance
        self.requires_payout_account = requires_payout_account
        self.intents: dict[str, MockIntent] = {}
        self.latency: dict[str, float] = {}
        self._failures: dict[str, list[str]] = {op: [] for op in OPERATIONS}
        self._ids = itertools.count(1)
        self._event_ids = itertools.count(1)

    # --- Test controls ---

    def fail_next(self, operation: str, message: str = "card_declined") -> None:
        """Make the next call to ``operation`` raise GatewayError."""
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown operation '{operation}'. Valid: {OPERATIONS}")
        self._failures[operation].append(message)

    def call_count(self, operation: str) -> int:
        return sum(intent.calls.count(operation) for intent in self.intents.values())

    async def _enter(self, operation: str) -> None:
        delay = self.latency.get(operation, 0.0)
        # Yield even with no latency so concurrent callers interleave.
        await asyncio.sleep(delay)
        if self._failures[operation]:
            message = self._failures[operation].pop(0)
            logger.info("mock_gateway.injected_failure", operation=operation, error=message)
            raise GatewayError(f"Mock {operation} failed: {message}", operation=operation)

    def _intent(self, gateway_reference: str, operation: str) -> MockIntent:
        intent = self.intents.get(gateway_reference)
        if intent is None:
            raise GatewayError(
                f"No such payment intent: {gateway_reference}", operation=operation
            )
        return intent

    # --- PaymentGateway ---

    async def create_hold(
        self, amount: int, currency: str, metadata: dict[str, str]
    ) -> HoldResult:
        await self._enter("create_hold")
        # Same payment id, same intent: the processor's idempotency key.
        existing = self._intent_for_payment(metadata.get("payment_id"))
        if existing is not None:
            existing.calls.append("create_hold")
            logger.info("mock_gateway.hold_replayed", gateway_reference=existing.reference)
            return HoldResult(
                gateway_reference=existing.reference,
                client_token=existing.client_token,
                held=existing.status == "requires_capture",
            )
        if self.requires_payout_account and not metadata.get("payee_account"):
            raise GatewayError(
                f"No connected account for provider {metadata.get('payee_id')}",
                operation="create_hold",
            )

        n = next(self._ids)
        reference = f"pi_mock_{n}"
        intent = MockIntent(
            reference=reference,
            amount=amount,
            currency=currency,
            metadata=dict(metadata),
            status="requires_capture" if self.auto_confirm else "requires_payment_method",
            client_token=f"{reference}_secret_{n:06d}",
        )
        intent.calls.append("create_hold")
        self.intents[reference] = intent
        logger.info("mock_gateway.hold_created", gateway_reference=reference, amount=amount)
        return HoldResult(
            gateway_reference=reference,
            client_token=intent.client_token,
            held=self.auto_confirm,
        )

    def _intent_for_payment(self, payment_id: str | None) -> MockIntent | None:
        if not payment_id:
            return None
        for intent in self.intents.values():
            if intent.metadata.get("payment_id") == payment_id:
                return intent
        return None

    async def capture_or_transfer(self, gateway_reference: str) -> None:
        await self._enter("capture")
        intent = self._intent(gateway_reference, "capture")
        intent.calls.append("capture")
        if intent.status == "succeeded":
            return
        if intent.status != "requires_capture":
            raise GatewayError(
                f"Cannot capture {gateway_reference} in status {intent.status}",
                operation="capture",
            )
        intent.status = "succeeded"

    async def refund(self, gateway_reference: str) -> None:
        await self._enter("refund")
        intent = self._intent(gateway_reference, "refund")
        intent.calls.append("refund")
        if intent.status == "canceled":
            return
        if intent.status == "succeeded":
            raise GatewayError(
                f"Cannot cancel captured intent {gateway_reference}", operation="refund"
            )
        intent.status = "canceled"

    def verify_and_parse_event(
        self, payload: bytes, signature_header: str | None
    ) -> GatewayEvent:
        verify_signature(payload, signature_header, self.webhook_secret, self.tolerance)
        return parse_event(payload)

    # --- Event construction (what the processor would POST to the webhook) ---

    def confirm(self, gateway_reference: str) -> None:
        """Simulate the client completing payment on an unconfirmed hold."""
        self._intent(gateway_reference, "confirm").status = "requires_capture"

    def build_event(
        self,
        event_type: str,
        gateway_reference: str,
        event_id: str | None = None,
        metadata: dict[str, str] | None = None,
        timestamp: int | None = None,
    ) -> tuple[bytes, str]:
        """Return ``(payload, signature_header)`` for a signed event."""
        intent = self.intents.get(gateway_reference)
        meta = dict(metadata if metadata is not None else (intent.metadata if intent else {}))
        obj: dict[str, Any]
        if event_type.startswith("payment_intent."):
            obj = {"id": gateway_reference, "object": "payment_intent", "metadata": meta}
        else:
            obj = {
                "id": f"ch_mock_{gateway_reference.rsplit('_', 1)[-1]}",
                "object": event_type.split(".", 1)[0],
                "payment_intent": gateway_reference,
                "metadata": meta,
            }
        if intent is not None:
            obj["amount"] = intent.amount
            obj["currency"] = intent.currency

        body = {
            "id": event_id or f"evt_mock_{next(self._event_ids)}",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }
        payload = json.dumps(body).encode()
        return payload, sign_payload(payload, self.webhook_secret, timestamp)
