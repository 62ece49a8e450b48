"""Payment and Job State Machine Guards.

Uses python-statemachine to enforce legal transitions at the domain level.
Whatever path drives a change (UI action, webhook, reconciliation) the
orchestrator fires the named event here first; an illegal transition
(e.g. pending -> released) raises TransitionNotAllowed before any store
write is attempted.

Payment transitions:
    pending         -> held_in_escrow   (hold_confirmed)
    pending         -> failed           (hold_failed)
    held_in_escrow  -> released         (funds_released)
    held_in_escrow  -> refunded         (funds_refunded)

Job transitions:
    open            -> in_progress      (escrow_funded)
    open            -> cancelled        (job_cancelled)
    in_progress     -> review_pending   (work_submitted)
    in_progress     -> disputed         (dispute_raised)
    review_pending  -> disputed         (dispute_raised)
    review_pending  -> completed        (funds_released)
    disputed        -> completed        (funds_released)
    in_progress     -> completed        (admin_release)
    in_progress     -> cancelled        (refund_issued)
    review_pending  -> cancelled        (refund_issued)
    disputed        -> cancelled        (refund_issued)
"""

from __future__ import annotations

from statemachine import State, StateMachine


class _GuardMixin:
    """Start-at-any-status construction shared by both machines."""

    def _validate_start(self, current_status: str) -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(f"Unknown status '{current_status}'. Valid states: {valid}")

    @property
    def status(self) -> str:
        """Return the current state value as a plain string."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return the event names that can fire from the current state."""
        return [event.name for event in self.allowed_events]


class PaymentStateMachine(_GuardMixin, StateMachine):
    """Guards the escrow payment record lifecycle.

    Usage:
        sm = PaymentStateMachine(current_status="pending")
        sm.hold_confirmed()
        sm.status  # "held_in_escrow"
    """

    pending = State("Pending", initial=True)
    held_in_escrow = State("Held in escrow")
    released = State("Released", final=True)
    refunded = State("Refunded", final=True)
    failed = State("Failed", final=True)

    hold_confirmed = pending.to(held_in_escrow)
    hold_failed = pending.to(failed)
    funds_released = held_in_escrow.to(released)
    funds_refunded = held_in_escrow.to(refunded)

    def __init__(self, current_status: str = "pending") -> None:
        self._validate_start(current_status)
        super().__init__(start_value=current_status)


class JobStateMachine(_GuardMixin, StateMachine):
    """Guards the job lifecycle.

    Once disputed, only funds_released and refund_issued can fire.
    """

    open = State("Open", initial=True)
    in_progress = State("In progress")
    review_pending = State("Review pending")
    disputed = State("Disputed")
    completed = State("Completed", final=True)
    cancelled = State("Cancelled", final=True)

    escrow_funded = open.to(in_progress)
    job_cancelled = open.to(cancelled)
    work_submitted = in_progress.to(review_pending)
    dispute_raised = in_progress.to(disputed) | review_pending.to(disputed)
    funds_released = review_pending.to(completed) | disputed.to(completed)
    admin_release = in_progress.to(completed)
    refund_issued = (
        in_progress.to(cancelled) | review_pending.to(cancelled) | disputed.to(cancelled)
    )

    def __init__(self, current_status: str = "open") -> None:
        self._validate_start(current_status)
        super().__init__(start_value=current_status)


def validate_transition(
    current_status: str,
    event_name: str,
    machine: type[StateMachine] = PaymentStateMachine,
) -> str:
    """Validate a transition and return the resulting status.

    Creates a throwaway machine at ``current_status``, fires ``event_name``
    and reports where it landed.

    Raises:
        TransitionNotAllowed: If the event cannot fire from current_status.
        ValueError: If the status or event name is unknown.
    """
    sm = machine(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method) or event_name.startswith("_"):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status
