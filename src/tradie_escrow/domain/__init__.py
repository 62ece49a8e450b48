"""Domain layer: pure business rules with zero framework dependencies."""

from tradie_escrow.domain.enums import (
    EventOutcome,
    EventType,
    JobStatus,
    NotificationKind,
    PaymentStatus,
    PendingAction,
    ProposalStatus,
)
from tradie_escrow.domain.exceptions import (
    ActiveHoldExistsError,
    EscrowError,
    EventVerificationError,
    GatewayError,
    GatewayTimeoutError,
    InvalidStateTransitionError,
    JobNotFoundError,
    ReconciliationRequiredError,
    StateConflictError,
)
from tradie_escrow.domain.models import (
    EscrowPayment,
    GatewayEvent,
    HoldOutcome,
    HoldResult,
    Job,
    Proposal,
    SettlementOutcome,
    TransitionRecord,
)
from tradie_escrow.domain.state_machine import (
    JobStateMachine,
    PaymentStateMachine,
    validate_transition,
)

__all__ = [
    "EventOutcome",
    "EventType",
    "JobStatus",
    "NotificationKind",
    "PaymentStatus",
    "PendingAction",
    "ProposalStatus",
    "ActiveHoldExistsError",
    "EscrowError",
    "EventVerificationError",
    "GatewayError",
    "GatewayTimeoutError",
    "InvalidStateTransitionError",
    "JobNotFoundError",
    "ReconciliationRequiredError",
    "StateConflictError",
    "EscrowPayment",
    "GatewayEvent",
    "HoldOutcome",
    "HoldResult",
    "Job",
    "Proposal",
    "SettlementOutcome",
    "TransitionRecord",
    "JobStateMachine",
    "PaymentStateMachine",
    "validate_transition",
]
