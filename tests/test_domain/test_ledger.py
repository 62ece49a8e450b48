"""Tests for gateway event routing and the idempotency ledger."""

from __future__ import annotations

import uuid

import pytest

from tradie_escrow.domain.enums import PaymentStatus
from tradie_escrow.domain.ledger import (
    append_event,
    has_applied,
    is_supported,
    resolve_transition,
)
from tradie_escrow.domain.models import EscrowPayment, GatewayEvent


def _payment(event_ids: tuple[str, ...] = ()) -> EscrowPayment:
    return EscrowPayment(
        job_id=uuid.uuid4(),
        proposal_id=uuid.uuid4(),
        payer_id="cust",
        payee_id="tradie",
        amount=10_000,
        currency="aud",
        external_event_ids=event_ids,
    )


class TestResolveTransition:
    @pytest.mark.parametrize(
        ("event_type", "status", "expected"),
        [
            ("payment_intent.succeeded", PaymentStatus.PENDING, "hold_confirmed"),
            ("payment_intent.amount_capturable_updated", PaymentStatus.PENDING, "hold_confirmed"),
            ("payment_intent.payment_failed", PaymentStatus.PENDING, "hold_failed"),
            ("payment_intent.canceled", PaymentStatus.PENDING, "hold_failed"),
            ("payment_intent.canceled", PaymentStatus.HELD_IN_ESCROW, "funds_refunded"),
            ("charge.captured", PaymentStatus.HELD_IN_ESCROW, "funds_released"),
            ("charge.refunded", PaymentStatus.HELD_IN_ESCROW, "funds_refunded"),
        ],
    )
    def test_mapped_events(self, event_type: str, status: PaymentStatus, expected: str) -> None:
        assert resolve_transition(event_type, status) == expected

    def test_late_hold_confirmation_moves_nothing(self) -> None:
        assert resolve_transition("payment_intent.succeeded", PaymentStatus.HELD_IN_ESCROW) is None

    def test_capture_on_pending_moves_nothing(self) -> None:
        assert resolve_transition("charge.captured", PaymentStatus.PENDING) is None

    def test_unknown_type(self) -> None:
        assert not is_supported("customer.created")
        assert resolve_transition("customer.created", PaymentStatus.PENDING) is None


class TestLedger:
    def test_append_preserves_order(self) -> None:
        payment = _payment(("evt_1",))
        assert append_event(payment, "evt_2") == ("evt_1", "evt_2")

    def test_append_is_idempotent(self) -> None:
        payment = _payment(("evt_1",))
        assert append_event(payment, "evt_1") == ("evt_1",)

    def test_has_applied(self) -> None:
        payment = _payment(("evt_1",))
        assert has_applied(payment, "evt_1")
        assert not has_applied(payment, "evt_2")


class TestGatewayEventReference:
    def test_payment_intent_object(self) -> None:
        event = GatewayEvent(
            "evt_1", "payment_intent.succeeded", {"id": "pi_1", "object": "payment_intent"}
        )
        assert event.gateway_reference == "pi_1"

    def test_charge_object(self) -> None:
        event = GatewayEvent(
            "evt_2", "charge.captured", {"id": "ch_1", "object": "charge", "payment_intent": "pi_1"}
        )
        assert event.gateway_reference == "pi_1"
        assert event.metadata == {}
