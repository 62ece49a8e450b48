"""SQLAlchemy 2.0 ORM models for the escrow service.

Five tables:
    1. jobs            : Customer job listings and their lifecycle status.
    2. proposals       : Provider quotes against a job.
    3. escrow_payments : One row per escrow transaction, carrying its own
                          idempotency ledger (external_event_ids).
    4. escrow_events   : Append-only audit log of every applied transition.
    5. provider_payout_accounts : Processor account each provider is paid into.

Design decisions:
    - UUID primary keys, integer minor-unit amounts (never float).
    - A version column on jobs and payments; every status write is
      "UPDATE ... WHERE status = :expected [AND version = :v]".
    - Partial unique indexes enforce one active payment per job and one
      accepted proposal per job at the database level.
    - Generic JSON (JSONB on PostgreSQL) so the same models run on SQLite.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")

_ACTIVE_PAYMENT = "status IN ('pending', 'held_in_escrow')"
_ACCEPTED_PROPOSAL = "status = 'accepted'"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# 1. jobs
# ---------------------------------------------------------------------------
class JobRow(Base):
    """A customer's job listing."""

    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="open",
        comment="Current lifecycle state (guarded by JobStateMachine)",
    )
    assigned_provider_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        default=None,
        comment="Provider of the accepted proposal (set when the hold attaches)",
    )
    payment_reference: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        default=None,
        comment="Gateway reference of the escrow hold",
    )
    budget_min: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    budget_max: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'in_progress', 'review_pending', 'disputed', "
            "'completed', 'cancelled')",
            name="ck_job_valid_status",
        ),
        Index("idx_job_status", "status"),
        Index("idx_job_customer", "customer_id"),
    )

    def __repr__(self) -> str:
        return f"<JobRow id={self.id} status={self.status}>"


# ---------------------------------------------------------------------------
# 2. proposals
# ---------------------------------------------------------------------------
class ProposalRow(Base):
    """A provider's quote for a job."""

    __tablename__ = "proposals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected')", name="ck_proposal_valid_status"
        ),
        CheckConstraint("price > 0", name="ck_proposal_positive_price"),
        Index("idx_proposal_job", "job_id"),
        Index(
            "uq_proposal_accepted_per_job",
            "job_id",
            unique=True,
            postgresql_where=text(_ACCEPTED_PROPOSAL),
            sqlite_where=text(_ACCEPTED_PROPOSAL),
        ),
    )


# ---------------------------------------------------------------------------
# 3. escrow_payments
# ---------------------------------------------------------------------------
class EscrowPaymentRow(Base):
    """One escrow transaction between a customer and a provider."""

    __tablename__ = "escrow_payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    proposal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("proposals.id"), nullable=False
    )
    payer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payee_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(
        BigInteger, nullable=False, comment="Minor currency units; immutable"
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        comment="Current lifecycle state (guarded by PaymentStateMachine)",
    )
    gateway_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_event_ids: Mapped[list[str]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Gateway event ids already applied (idempotency ledger)",
    )
    pending_action: Mapped[str | None] = mapped_column(String(10), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'held_in_escrow', 'released', 'refunded', 'failed')",
            name="ck_payment_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        Index("idx_payment_job", "job_id"),
        Index("idx_payment_gateway_reference", "gateway_reference"),
        Index(
            "uq_payment_active_per_job",
            "job_id",
            unique=True,
            postgresql_where=text(_ACTIVE_PAYMENT),
            sqlite_where=text(_ACTIVE_PAYMENT),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowPaymentRow id={self.id} status={self.status} "
            f"amount={self.amount} {self.currency}>"
        )


# ---------------------------------------------------------------------------
# 4. escrow_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class EscrowEventRow(Base):
    """Immutable audit record of one transition on a job or its payment."""

    __tablename__ = "escrow_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    payment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[str] = mapped_column(String(64), nullable=False, default="SYSTEM")
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True, default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_event_job", "job_id"),
        Index("idx_event_type", "event_type"),
        Index("idx_event_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowEventRow id={self.id} type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )


# ---------------------------------------------------------------------------
# 5. provider_payout_accounts
# ---------------------------------------------------------------------------
class ProviderPayoutAccountRow(Base):
    """The processor-side connected account a provider's payouts land in."""

    __tablename__ = "provider_payout_accounts"

    provider_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="Connected account id at the processor"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return f"<ProviderPayoutAccountRow provider={self.provider_id}>"
