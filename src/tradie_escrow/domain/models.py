"""Domain records exchanged between the orchestrator and its collaborators.

Records are frozen dataclasses: a store hands out snapshots and every change
goes back through a conditional write, never through attribute assignment.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from tradie_escrow.domain.enums import (
    JobStatus,
    NotificationKind,
    PaymentStatus,
    PendingAction,
    ProposalStatus,
)


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Job:
    """A customer's job listing.

    Attributes:
        payment_reference: Gateway reference of the escrow hold, set when the
            hold attaches to the job.
        version: Incremented by the store on every conditional write.
    """

    customer_id: str
    title: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    status: JobStatus = JobStatus.OPEN
    assigned_provider_id: str | None = None
    payment_reference: str | None = None
    budget_min: int | None = None
    budget_max: int | None = None
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Proposal:
    """A provider's quote for a job. ``price`` is in minor currency units."""

    job_id: uuid.UUID
    provider_id: str
    price: int
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    status: ProposalStatus = ProposalStatus.PENDING
    message: str | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class EscrowPayment:
    """One escrow transaction for a job.

    Attributes:
        amount: Minor currency units; immutable after creation.
        external_event_ids: Gateway event ids already applied to this record
            (the idempotency ledger). Written in the same conditional update
            as the transition the event caused.
        pending_action: Claim taken before a capture/refund gateway call so a
            racing release and refund cannot both reach the gateway.
    """

    job_id: uuid.UUID
    proposal_id: uuid.UUID
    payer_id: str
    payee_id: str
    amount: int
    currency: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    status: PaymentStatus = PaymentStatus.PENDING
    gateway_reference: str | None = None
    external_event_ids: tuple[str, ...] = ()
    pending_action: PendingAction | None = None
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal


@dataclass(frozen=True)
class AuditEvent:
    """Append-only audit row describing one applied transition."""

    job_id: uuid.UUID
    event_type: str
    new_status: str
    old_status: str | None = None
    payment_id: uuid.UUID | None = None
    actor: str = "SYSTEM"
    metadata: dict[str, Any] | None = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class GatewayEvent:
    """A verified, parsed gateway notification.

    ``data`` is the event's ``data.object`` (payment intent, charge, ...).
    """

    event_id: str
    type: str
    data: dict[str, Any]
    received_at: datetime = field(default_factory=utcnow)

    @property
    def metadata(self) -> dict[str, Any]:
        return dict(self.data.get("metadata") or {})

    @property
    def gateway_reference(self) -> str | None:
        """Payment intent id the event is about, whatever the object type."""
        if self.data.get("object") == "payment_intent":
            return self.data.get("id")
        return self.data.get("payment_intent")


@dataclass(frozen=True)
class HoldResult:
    """Gateway acknowledgment of a hold request.

    ``held`` is True when the funds are already reserved; False when the
    client still has to confirm and a webhook will report the outcome.
    """

    gateway_reference: str
    client_token: str
    held: bool


@dataclass(frozen=True)
class HoldOutcome:
    """What create_hold / accept_proposal returns to the caller."""

    payment_id: uuid.UUID
    client_token: str | None
    payment_status: PaymentStatus
    job_status: JobStatus


@dataclass(frozen=True)
class SettlementOutcome:
    """What release / refund returns to the caller."""

    payment_id: uuid.UUID
    payment_status: PaymentStatus
    job_status: JobStatus


@dataclass(frozen=True)
class TransitionRecord:
    """Message placed on the notification outbox after a transition commits."""

    kind: NotificationKind
    job_id: uuid.UUID
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "job_id": str(self.job_id),
            "payload": self.payload,
            "occurred_at": self.occurred_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransitionRecord:
        return cls(
            kind=NotificationKind(data["kind"]),
            job_id=uuid.UUID(data["job_id"]),
            payload=dict(data.get("payload") or {}),
            occurred_at=datetime.fromisoformat(data["occurred_at"]),
        )
