"""Domain enumerations for the escrow service.

One closed enumeration per state machine plus the audit/notification
vocabularies. Framework-agnostic: no SQLAlchemy, no FastAPI imports.
"""

import enum


class PaymentStatus(enum.StrEnum):
    """Lifecycle states of an escrow payment record.

    Transitions are enforced by PaymentStateMachine (domain/state_machine.py).
    """

    PENDING = "pending"
    HELD_IN_ESCROW = "held_in_escrow"
    RELEASED = "released"
    REFUNDED = "refunded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_PAYMENT_STATUSES


_TERMINAL_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.RELEASED, PaymentStatus.REFUNDED, PaymentStatus.FAILED}
)

ACTIVE_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.HELD_IN_ESCROW)


class JobStatus(enum.StrEnum):
    """Lifecycle states of a job.

    Transitions are enforced by JobStateMachine (domain/state_machine.py).
    """

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    REVIEW_PENDING = "review_pending"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Statuses at which a provider must be assigned to the job.
ASSIGNED_JOB_STATUSES = frozenset(
    {JobStatus.IN_PROGRESS, JobStatus.REVIEW_PENDING, JobStatus.DISPUTED, JobStatus.COMPLETED}
)


class ProposalStatus(enum.StrEnum):
    """States of a provider's quote for a job."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class PendingAction(enum.StrEnum):
    """A capture or refund that has been claimed on a held record but whose
    gateway call has not been confirmed yet."""

    RELEASE = "release"
    REFUND = "refund"


class EventType(enum.StrEnum):
    """Types of audit events recorded in the escrow_events table.

    Every applied transition produces exactly one event.
    """

    # Jobs and quotes
    JOB_CREATED = "JOB_CREATED"
    PROPOSAL_SUBMITTED = "PROPOSAL_SUBMITTED"
    PROPOSAL_ACCEPTED = "PROPOSAL_ACCEPTED"
    PROPOSAL_REJECTED = "PROPOSAL_REJECTED"
    JOB_STARTED = "JOB_STARTED"
    WORK_SUBMITTED = "WORK_SUBMITTED"
    JOB_CANCELLED = "JOB_CANCELLED"
    JOB_COMPLETED = "JOB_COMPLETED"

    # Escrow
    HOLD_REQUESTED = "HOLD_REQUESTED"
    HOLD_CONFIRMED = "HOLD_CONFIRMED"
    HOLD_FAILED = "HOLD_FAILED"
    FUNDS_RELEASED = "FUNDS_RELEASED"
    FUNDS_REFUNDED = "FUNDS_REFUNDED"
    GATEWAY_EVENT_RECORDED = "GATEWAY_EVENT_RECORDED"

    # Disputes
    DISPUTE_RAISED = "DISPUTE_RAISED"


class NotificationKind(enum.StrEnum):
    """Kinds of best-effort notifications sent after a transition commits."""

    PROPOSAL_RECEIVED = "proposal_received"
    PAYMENT_HELD = "payment_held"
    PAYMENT_FAILED = "payment_failed"
    WORK_SUBMITTED = "work_submitted"
    DISPUTE_RAISED = "dispute_raised"
    FUNDS_RELEASED = "funds_released"
    FUNDS_REFUNDED = "funds_refunded"
    JOB_CANCELLED = "job_cancelled"


class EventOutcome(enum.StrEnum):
    """Result of feeding one gateway event through the orchestrator."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
