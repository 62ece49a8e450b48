"""Domain exceptions for the escrow service.

Four families, each translated to an HTTP response by the API middleware:

    validation          -> rejected before any state is touched (4xx)
    state conflict      -> a conditional write found a stale prior state (409)
    external dependency -> gateway or store failed or timed out (5xx, retryable)
    not found           -> unknown job / proposal / payment (404)

``user_message`` is the text safe to show an end user; ``message`` is for logs.
"""

from __future__ import annotations

PAYMENT_NOT_STARTED = "Payment could not be started, please retry."
FUNDS_REMAIN_HELD = "Action could not be completed, funds remain held."
OUTCOME_PENDING = "The payment processor has not confirmed this yet, please check back shortly."
BEING_RECONCILED = "Your payment is being reconciled, we will confirm the outcome shortly."


class EscrowError(Exception):
    """Base exception for all domain errors."""

    def __init__(
        self,
        message: str,
        code: str = "ESCROW_ERROR",
        user_message: str | None = None,
    ) -> None:
        self.message = message
        self.code = code
        self.user_message = user_message or message
        super().__init__(self.message)


# --- Validation Errors ---


class ValidationError(EscrowError):
    """Malformed input rejected before any state is read or written."""

    def __init__(self, message: str, code: str = "VALIDATION_ERROR") -> None:
        super().__init__(message=message, code=code)


class InvalidAmountError(ValidationError):
    """Raised when an escrow amount is not a positive integer of minor units."""

    def __init__(self, amount: object) -> None:
        super().__init__(
            message=f"Amount must be a positive integer of minor units, got {amount!r}",
            code="INVALID_AMOUNT",
        )
        self.amount = amount


class EventVerificationError(ValidationError):
    """Raised when an inbound gateway event fails signature or shape checks.

    Non-retryable: redelivering the same bytes will fail the same way.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(
            message=f"Gateway event rejected: {reason}",
            code="EVENT_VERIFICATION_FAILED",
        )
        self.reason = reason


class NotAuthorizedError(ValidationError):
    """Raised when the acting party may not perform the requested action."""

    def __init__(self, actor: str, action: str) -> None:
        super().__init__(
            message=f"{actor} is not allowed to {action}",
            code="NOT_AUTHORIZED",
        )
        self.actor = actor
        self.action = action


# --- Not Found Errors ---


class NotFoundError(EscrowError):
    """Base class for lookups that found nothing."""


class JobNotFoundError(NotFoundError):
    def __init__(self, job_id: str) -> None:
        super().__init__(message=f"Job not found: {job_id}", code="JOB_NOT_FOUND")
        self.job_id = job_id


class ProposalNotFoundError(NotFoundError):
    def __init__(self, proposal_id: str) -> None:
        super().__init__(
            message=f"Proposal not found: {proposal_id}", code="PROPOSAL_NOT_FOUND"
        )
        self.proposal_id = proposal_id


class PaymentNotFoundError(NotFoundError):
    def __init__(self, reference: str) -> None:
        super().__init__(
            message=f"Escrow payment not found: {reference}", code="PAYMENT_NOT_FOUND"
        )
        self.reference = reference


class PayoutAccountNotFoundError(NotFoundError):
    def __init__(self, provider_id: str) -> None:
        super().__init__(
            message=f"No payout account registered for provider {provider_id}",
            code="PAYOUT_ACCOUNT_NOT_FOUND",
        )
        self.provider_id = provider_id


# --- State Conflict Errors ---


class StateConflictError(EscrowError):
    """A conditional write found the record in a different state than expected.

    Expected under concurrency. The core never retries these on its own; the
    caller refreshes and decides.
    """

    def __init__(
        self,
        message: str,
        code: str = "STATE_CONFLICT",
        expected: str | None = None,
        actual: str | None = None,
    ) -> None:
        super().__init__(message=message, code=code)
        self.expected = expected
        self.actual = actual


class InvalidStateTransitionError(StateConflictError):
    """Raised when the state machine does not allow an event from the current state.

    Example: release requested while the payment is still pending.
    """

    def __init__(self, current_state: str, attempted_event: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {attempted_event} from {current_state}",
            code="INVALID_STATE_TRANSITION",
            actual=current_state,
        )
        self.current_state = current_state
        self.attempted_event = attempted_event


class ActiveHoldExistsError(StateConflictError):
    """Raised when a job already has a pending or held escrow payment."""

    def __init__(self, job_id: str) -> None:
        super().__init__(
            message=f"Job already has an active escrow payment: {job_id}",
            code="ACTIVE_HOLD_EXISTS",
        )
        self.job_id = job_id


# --- External Dependency Errors ---


class ExternalDependencyError(EscrowError):
    """A gateway or store call failed; the operation may be retried."""

    retryable = True


class GatewayError(ExternalDependencyError):
    """The payment gateway reported a definite failure."""

    def __init__(
        self,
        message: str,
        operation: str,
        user_message: str | None = None,
    ) -> None:
        super().__init__(message=message, code="GATEWAY_ERROR", user_message=user_message)
        self.operation = operation


class GatewayTimeoutError(GatewayError):
    """The gateway call did not answer in time: its outcome is unknown.

    The record is left in its pre-call status and the asynchronous gateway
    event is relied upon to reconcile the real outcome.
    """

    def __init__(self, operation: str, timeout: float, user_message: str | None = None) -> None:
        super().__init__(
            message=f"Gateway {operation} timed out after {timeout}s; outcome unknown",
            operation=operation,
            user_message=user_message,
        )
        self.code = "GATEWAY_TIMEOUT"
        self.timeout = timeout


class StoreError(ExternalDependencyError):
    """A record store call failed for a reason other than a state conflict."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="STORE_ERROR")


class ReconciliationRequiredError(ExternalDependencyError):
    """The gateway moved money but the store could not be brought in line.

    Never reported as success. Logged for manual reconciliation.
    """

    retryable = False

    def __init__(self, operation: str, payment_id: str, detail: str) -> None:
        super().__init__(
            message=(
                f"{operation} for payment {payment_id} succeeded at the gateway "
                f"but could not be recorded: {detail}"
            ),
            code="RECONCILIATION_REQUIRED",
            user_message=BEING_RECONCILED,
        )
        self.operation = operation
        self.payment_id = payment_id
