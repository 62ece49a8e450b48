"""Gateway event routing and the per-record idempotency ledger.

The ledger is the ``external_event_ids`` tuple carried by each escrow
payment record. Checking it and extending it happen against the same
record version, so the orchestrator commits the dedup mark and the
transition in one conditional write.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from tradie_escrow.domain.enums import PaymentStatus

if TYPE_CHECKING:
    from tradie_escrow.domain.models import EscrowPayment

# Gateway event type -> {payment status it applies to: state machine event}
EVENT_TRANSITIONS: dict[str, dict[PaymentStatus, str]] = {
    "payment_intent.succeeded": {PaymentStatus.PENDING: "hold_confirmed"},
    "payment_intent.amount_capturable_updated": {PaymentStatus.PENDING: "hold_confirmed"},
    "payment_intent.payment_failed": {PaymentStatus.PENDING: "hold_failed"},
    "payment_intent.canceled": {
        PaymentStatus.PENDING: "hold_failed",
        PaymentStatus.HELD_IN_ESCROW: "funds_refunded",
    },
    "charge.captured": {PaymentStatus.HELD_IN_ESCROW: "funds_released"},
    "charge.refunded": {PaymentStatus.HELD_IN_ESCROW: "funds_refunded"},
}

# Event types whose arrival means the hold exists at the gateway; used to
# finish attaching a held record to its job even when no transition fires.
HOLD_CONFIRMATION_EVENTS = frozenset(
    {"payment_intent.succeeded", "payment_intent.amount_capturable_updated"}
)


def is_supported(event_type: str) -> bool:
    return event_type in EVENT_TRANSITIONS


def resolve_transition(event_type: str, current_status: PaymentStatus) -> str | None:
    """Return the state machine event implied by ``event_type`` from
    ``current_status``, or None when the event does not move the record
    (late or out-of-order delivery)."""
    return EVENT_TRANSITIONS.get(event_type, {}).get(current_status)


def has_applied(payment: EscrowPayment, event_id: str) -> bool:
    return event_id in payment.external_event_ids


def append_event(payment: EscrowPayment, event_id: str) -> tuple[str, ...]:
    """Ledger contents after recording ``event_id`` (order preserved, no repeats)."""
    if event_id in payment.external_event_ids:
        return payment.external_event_ids
    return (*payment.external_event_ids, event_id)
