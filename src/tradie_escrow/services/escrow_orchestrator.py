"""Escrow Orchestrator: the only writer of job and payment statuses.

Coordinates between:
    - Domain state machines (transition guard)
    - Record stores (conditional writes)
    - Payment gateway (holds, captures, refunds, webhooks)
    - Audit event log and notification outbox (best effort)

Every trigger (a UI action routed through the API, or a gateway webhook) is
an independent short-lived call. There is no lock: each write names the
status (and for payments the version) it expects to replace, and a stale
expectation surfaces as StateConflictError for the caller to handle.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING, Any

from statemachine.exceptions import TransitionNotAllowed

from tradie_escrow.domain.enums import (
    ASSIGNED_JOB_STATUSES,
    EventOutcome,
    EventType,
    JobStatus,
    NotificationKind,
    PaymentStatus,
    PendingAction,
    ProposalStatus,
)
from tradie_escrow.domain.exceptions import (
    FUNDS_REMAIN_HELD,
    OUTCOME_PENDING,
    PAYMENT_NOT_STARTED,
    ActiveHoldExistsError,
    EventVerificationError,
    GatewayError,
    GatewayTimeoutError,
    InvalidAmountError,
    InvalidStateTransitionError,
    JobNotFoundError,
    NotAuthorizedError,
    PaymentNotFoundError,
    ProposalNotFoundError,
    ReconciliationRequiredError,
    StateConflictError,
    StoreError,
    ValidationError,
)
from tradie_escrow.domain.ledger import (
    HOLD_CONFIRMATION_EVENTS,
    append_event,
    has_applied,
    is_supported,
    resolve_transition,
)
from tradie_escrow.domain.models import (
    AuditEvent,
    EscrowPayment,
    HoldOutcome,
    SettlementOutcome,
    TransitionRecord,
)
from tradie_escrow.domain.state_machine import (
    JobStateMachine,
    PaymentStateMachine,
    validate_transition,
)
from tradie_escrow.logging_config import bind_escrow_context, get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from statemachine import StateMachine

    from tradie_escrow.domain.models import GatewayEvent, Job, Proposal
    from tradie_escrow.domain.ports import (
        EventLog,
        JobStore,
        PaymentGateway,
        PaymentStore,
        ProposalStore,
        ProviderAccountStore,
        TransitionOutbox,
    )

logger = get_logger(__name__)

GATEWAY_ACTOR = "GATEWAY"
SYSTEM_ACTOR = "SYSTEM"

_PAYMENT_AUDIT_TYPES = {
    "hold_confirmed": EventType.HOLD_CONFIRMED,
    "hold_failed": EventType.HOLD_FAILED,
    "funds_released": EventType.FUNDS_RELEASED,
    "funds_refunded": EventType.FUNDS_REFUNDED,
}

# Job events that can carry a job to a settled status, in preference order.
_SETTLING_JOB_EVENTS = {
    JobStatus.COMPLETED: ("funds_released", "admin_release"),
    JobStatus.CANCELLED: ("refund_issued",),
}
_SETTLED_JOB_AUDIT_TYPES = {
    JobStatus.COMPLETED: EventType.JOB_COMPLETED,
    JobStatus.CANCELLED: EventType.JOB_CANCELLED,
}


class EscrowOrchestrator:
    """Drives the escrow payment and job lifecycles."""

    def __init__(
        self,
        jobs: JobStore,
        proposals: ProposalStore,
        payments: PaymentStore,
        events: EventLog,
        gateway: PaymentGateway,
        outbox: TransitionOutbox,
        *,
        currency: str = "aud",
        gateway_timeout: float = 10.0,
        store_write_attempts: int = 3,
        payout_accounts: ProviderAccountStore | None = None,
    ) -> None:
        self._jobs = jobs
        self._proposals = proposals
        self._payments = payments
        self._events = events
        self._gateway = gateway
        self._outbox = outbox
        self._currency = currency
        self._gateway_timeout = gateway_timeout
        self._store_write_attempts = store_write_attempts
        self._payout_accounts = payout_accounts

    # ------------------------------------------------------------------
    # Hold creation
    # ------------------------------------------------------------------

    async def accept_proposal(self, proposal_id: uuid.UUID, payer_id: str) -> HoldOutcome:
        """Customer accepts a quote: escrow its price with the gateway."""
        proposal = await self._get_proposal_or_raise(proposal_id)
        return await self.create_hold(
            job_id=proposal.job_id,
            amount=proposal.price,
            payer_id=payer_id,
            payee_id=proposal.provider_id,
            proposal_id=proposal.id,
        )

    async def create_hold(
        self,
        job_id: uuid.UUID,
        amount: int,
        payer_id: str,
        payee_id: str,
        proposal_id: uuid.UUID,
    ) -> HoldOutcome:
        """Reserve ``amount`` with the gateway for the given job and quote.

        The pending record is inserted before the gateway is called, so the
        store's one-active-record-per-job rule rejects a concurrent second
        hold before any money moves.

        Raises:
            InvalidAmountError: amount is not a positive integer.
            NotAuthorizedError: payer is not the job's customer.
            InvalidStateTransitionError: the job is not open.
            ActiveHoldExistsError: the job already has a pending or held payment.
            ValidationError: PAYOUT_ACCOUNT_MISSING when the gateway pays providers
                into connected accounts and this provider has none.
            GatewayError: the gateway refused; the record is marked failed.
            GatewayTimeoutError: outcome unknown; the record stays pending.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(amount)
        bind_escrow_context(job_id=str(job_id))

        job = await self._get_job_or_raise(job_id)
        if payer_id != job.customer_id:
            raise NotAuthorizedError(payer_id, f"pay for job {job_id}")
        if job.status != JobStatus.OPEN:
            raise InvalidStateTransitionError(job.status, "escrow_funded")

        proposal = await self._get_proposal_or_raise(proposal_id)
        if proposal.job_id != job_id or proposal.provider_id != payee_id:
            raise ValidationError(
                f"Proposal {proposal_id} is not {payee_id}'s quote for job {job_id}",
                code="PROPOSAL_MISMATCH",
            )
        if proposal.price != amount:
            raise ValidationError(
                f"Amount {amount} does not match the quoted price {proposal.price}",
                code="AMOUNT_MISMATCH",
            )
        if proposal.status != ProposalStatus.PENDING:
            raise StateConflictError(
                f"Proposal {proposal_id} is {proposal.status}",
                expected=ProposalStatus.PENDING,
                actual=proposal.status,
            )

        payee_account = await self._lookup_payout_account(payee_id)
        if payee_account is None and self._gateway.requires_payout_account:
            raise ValidationError(
                f"Provider {payee_id} has not connected a payout account yet",
                code="PAYOUT_ACCOUNT_MISSING",
            )

        payment = await self._payments.insert_payment(
            EscrowPayment(
                job_id=job_id,
                proposal_id=proposal_id,
                payer_id=payer_id,
                payee_id=payee_id,
                amount=amount,
                currency=self._currency,
            )
        )
        bind_escrow_context(payment_id=str(payment.id))
        await self._audit(
            payment.job_id,
            EventType.HOLD_REQUESTED,
            new_status=PaymentStatus.PENDING,
            payment_id=payment.id,
            actor=payer_id,
            metadata={"amount": amount, "currency": self._currency},
        )

        try:
            hold = await self._call_gateway(
                "create_hold",
                self._gateway.create_hold(
                    amount, self._currency, _hold_metadata(payment, payee_account)
                ),
                user_message=OUTCOME_PENDING,
            )
        except GatewayTimeoutError:
            logger.warning("escrow.hold_outcome_unknown", amount=amount)
            raise
        except GatewayError as exc:
            await self._fail_hold(payment, reason=exc.message)
            raise GatewayError(
                exc.message, operation="create_hold", user_message=PAYMENT_NOT_STARTED
            ) from exc

        logger.info(
            "escrow.hold_created",
            gateway_reference=hold.gateway_reference,
            held=hold.held,
            amount=amount,
        )
        try:
            payment = await self._payments.update_payment_status(
                payment.id,
                PaymentStatus.PENDING,
                PaymentStatus.PENDING,
                gateway_reference=hold.gateway_reference,
            )
        except StateConflictError:
            # A webhook got there first; it stored the reference itself.
            payment = await self._get_payment_or_raise(payment.id)

        if hold.held:
            payment, job = await self._confirm_hold(payment, actor=payer_id)
        return HoldOutcome(
            payment_id=payment.id,
            client_token=hold.client_token,
            payment_status=payment.status,
            job_status=job.status,
        )

    async def _confirm_hold(self, payment: EscrowPayment, actor: str) -> tuple[EscrowPayment, Job]:
        if payment.status == PaymentStatus.PENDING:
            try:
                payment = await self._transition_payment(payment, "hold_confirmed", actor)
            except StateConflictError:
                payment = await self._get_payment_or_raise(payment.id)
        if payment.status != PaymentStatus.HELD_IN_ESCROW:
            raise StateConflictError(
                f"Payment {payment.id} is {payment.status}, cannot attach hold",
                expected=PaymentStatus.HELD_IN_ESCROW,
                actual=payment.status,
            )
        job = await self._attach_hold_to_job(payment)
        await self._notify(
            NotificationKind.PAYMENT_HELD,
            payment,
            customer_id=payment.payer_id,
            provider_id=payment.payee_id,
        )
        return payment, job

    async def _fail_hold(self, payment: EscrowPayment, reason: str) -> None:
        try:
            await self._transition_payment(
                payment, "hold_failed", SYSTEM_ACTOR, metadata={"reason": reason}
            )
        except StateConflictError:
            logger.info("escrow.hold_failure_superseded")
            return
        await self._notify(NotificationKind.PAYMENT_FAILED, payment, customer_id=payment.payer_id)

    async def _attach_hold_to_job(self, payment: EscrowPayment) -> Job:
        """Accept the paid proposal and start the job. Safe to repeat.

        A hold that can no longer attach (another quote already accepted, or
        the job moved on) is refunded rather than left holding the
        customer's money.
        """
        accepted_here = False
        proposal = await self._get_proposal_or_raise(payment.proposal_id)
        if proposal.status == ProposalStatus.PENDING:
            try:
                proposal = await self._proposals.update_proposal_status(
                    proposal.id, ProposalStatus.PENDING, ProposalStatus.ACCEPTED
                )
                accepted_here = True
                await self._audit(
                    payment.job_id,
                    EventType.PROPOSAL_ACCEPTED,
                    old_status=ProposalStatus.PENDING,
                    new_status=ProposalStatus.ACCEPTED,
                    payment_id=payment.id,
                    actor=payment.payer_id,
                    metadata={"proposal_id": str(proposal.id)},
                )
            except StateConflictError:
                proposal = await self._get_proposal_or_raise(payment.proposal_id)

        job = await self._get_job_or_raise(payment.job_id)
        if proposal.status == ProposalStatus.ACCEPTED and job.status == JobStatus.OPEN:
            self._fire(JobStateMachine, job.status, "escrow_funded")
            try:
                job = await self._jobs.update_job_status(
                    job.id,
                    JobStatus.OPEN,
                    JobStatus.IN_PROGRESS,
                    assigned_provider_id=payment.payee_id,
                    payment_reference=payment.gateway_reference,
                )
                await self._audit(
                    job.id,
                    EventType.JOB_STARTED,
                    old_status=JobStatus.OPEN,
                    new_status=JobStatus.IN_PROGRESS,
                    payment_id=payment.id,
                    actor=payment.payer_id,
                    metadata={"provider_id": payment.payee_id},
                )
            except StateConflictError:
                job = await self._get_job_or_raise(payment.job_id)

        if (
            proposal.status == ProposalStatus.ACCEPTED
            and job.status in ASSIGNED_JOB_STATUSES
            and job.assigned_provider_id == payment.payee_id
            and job.payment_reference == payment.gateway_reference
        ):
            return job

        logger.error(
            "escrow.hold_orphaned",
            proposal_status=proposal.status,
            job_status=job.status,
            job_payment_reference=job.payment_reference,
        )
        if accepted_here:
            try:
                await self._proposals.update_proposal_status(
                    proposal.id, ProposalStatus.ACCEPTED, ProposalStatus.PENDING
                )
            except StateConflictError:
                logger.warning("escrow.proposal_compensation_failed")
        await self._refund_orphaned_hold(payment)
        raise StateConflictError(
            f"Job {payment.job_id} can no longer take the hold for proposal "
            f"{payment.proposal_id}; the hold was refunded",
            code="HOLD_NOT_ATTACHED",
            expected=JobStatus.OPEN,
            actual=job.status,
        )

    async def _refund_orphaned_hold(self, payment: EscrowPayment) -> None:
        current = await self._get_payment_or_raise(payment.id)
        if current.status != PaymentStatus.HELD_IN_ESCROW or current.pending_action:
            return
        try:
            refunded = await self._execute_settlement(
                current, PendingAction.REFUND, SYSTEM_ACTOR, reason="hold_not_attached"
            )
        except (GatewayError, StateConflictError) as exc:
            logger.error("escrow.orphan_refund_failed", error=exc.message)
            return
        await self._notify(
            NotificationKind.FUNDS_REFUNDED,
            refunded,
            customer_id=refunded.payer_id,
            reason="hold_not_attached",
        )

    async def abandon_hold(
        self,
        job_id: uuid.UUID,
        requested_by: str,
        admin_override: bool = False,
    ) -> SettlementOutcome:
        """Give up on a hold the customer never confirmed.

        The authorization is voided at the gateway first and the record is
        marked failed afterwards, which frees the job to be cancelled or to
        take another quote. A hold whose creation timed out has no gateway
        reference yet: the create call is replayed under the same
        idempotency key to find out what the gateway made of it.

        Raises:
            NotAuthorizedError: requester is not the customer (or an admin).
            PaymentNotFoundError: the job has no active payment.
            InvalidStateTransitionError: the hold is already confirmed.
            GatewayError: the gateway refused; the record stays pending.
            GatewayTimeoutError: outcome unknown; abandoning again is safe.
        """
        bind_escrow_context(job_id=str(job_id))
        job = await self._get_job_or_raise(job_id)
        if not admin_override and requested_by != job.customer_id:
            raise NotAuthorizedError(requested_by, f"abandon the hold for job {job_id}")

        payment = await self._payments.get_active_payment(job_id)
        if payment is None:
            raise PaymentNotFoundError(f"active payment for job {job_id}")
        bind_escrow_context(payment_id=str(payment.id))
        self._fire(PaymentStateMachine, payment.status, "hold_failed")

        reference = payment.gateway_reference
        if reference is None:
            payee_account = await self._lookup_payout_account(payment.payee_id)
            hold = await self._call_gateway(
                "create_hold",
                self._gateway.create_hold(
                    payment.amount, payment.currency, _hold_metadata(payment, payee_account)
                ),
                user_message=OUTCOME_PENDING,
            )
            reference = hold.gateway_reference
            logger.info("escrow.hold_replayed", gateway_reference=reference)
        await self._call_gateway(
            "refund", self._gateway.refund(reference), user_message=FUNDS_REMAIN_HELD
        )
        logger.info("escrow.hold_voided", gateway_reference=reference)

        current = payment
        for _ in range(self._store_write_attempts):
            if current.status != PaymentStatus.PENDING:
                break
            fields = {"gateway_reference": reference} if current.gateway_reference is None else {}
            try:
                current = await self._transition_payment(
                    current,
                    "hold_failed",
                    requested_by,
                    metadata={"reason": "abandoned", "gateway_reference": reference},
                    **fields,
                )
            except StateConflictError:
                current = await self._get_payment_or_raise(payment.id)
                continue
            await self._notify(
                NotificationKind.PAYMENT_FAILED,
                current,
                customer_id=current.payer_id,
                reason="abandoned",
            )

        if current.status == PaymentStatus.PENDING:
            raise StateConflictError(
                f"Payment {payment.id} kept changing while being abandoned",
                expected=PaymentStatus.PENDING,
                actual=current.status,
            )
        if current.status == PaymentStatus.HELD_IN_ESCROW:
            # Confirmation landed between the read and the void: the money is
            # no longer held, so settle the record as refunded.
            logger.warning("escrow.abandon_raced_confirmation")
            current = await self._execute_settlement(
                current, PendingAction.REFUND, requested_by, reason="hold_abandoned"
            )
            job = await self._finish_job(current, JobStatus.CANCELLED, requested_by)
            await self._notify(
                NotificationKind.FUNDS_REFUNDED,
                current,
                customer_id=current.payer_id,
                reason="hold_abandoned",
            )
        else:
            job = await self._get_job_or_raise(job_id)
        return SettlementOutcome(
            payment_id=current.id, payment_status=current.status, job_status=job.status
        )

    async def _lookup_payout_account(self, provider_id: str) -> str | None:
        if self._payout_accounts is None:
            return None
        return await self._payout_accounts.get_payout_account(provider_id)

    # ------------------------------------------------------------------
    # Gateway events
    # ------------------------------------------------------------------

    async def apply_gateway_event(
        self, raw_payload: bytes, signature_header: str | None
    ) -> EventOutcome:
        """Verify and apply one gateway webhook delivery.

        Applying the same event id twice is a no-op: the id is appended to
        the payment's ledger in the same conditional write as the transition.

        Raises:
            EventVerificationError: unsigned, forged or malformed payload.
            StateConflictError: the record changed underneath; redelivery retries.
        """
        try:
            event = self._gateway.verify_and_parse_event(raw_payload, signature_header)
        except EventVerificationError as exc:
            logger.warning("webhook.rejected", reason=exc.reason)
            raise

        bind_escrow_context(event_id=event.event_id)
        log = logger.bind(event_type=event.type)

        if not is_supported(event.type):
            log.info("webhook.ignored", reason="unsupported_type")
            return EventOutcome.IGNORED

        payment = await self._locate_payment(event)
        if payment is None:
            log.warning("webhook.ignored", reason="no_matching_payment")
            return EventOutcome.IGNORED
        bind_escrow_context(job_id=str(payment.job_id), payment_id=str(payment.id))

        if has_applied(payment, event.event_id):
            log.info("webhook.duplicate")
            return EventOutcome.DUPLICATE
        if payment.is_terminal:
            log.info("webhook.ignored", reason="terminal_payment", status=payment.status)
            return EventOutcome.IGNORED

        fields: dict[str, Any] = {}
        if payment.gateway_reference is None and event.gateway_reference:
            fields["gateway_reference"] = event.gateway_reference

        transition = resolve_transition(event.type, payment.status)
        if transition is None:
            payment = await self._payments.update_payment_status(
                payment.id,
                payment.status,
                payment.status,
                expected_version=payment.version,
                external_event_ids=append_event(payment, event.event_id),
                **fields,
            )
            await self._audit(
                payment.job_id,
                EventType.GATEWAY_EVENT_RECORDED,
                old_status=payment.status,
                new_status=payment.status,
                payment_id=payment.id,
                actor=GATEWAY_ACTOR,
                metadata={"event_id": event.event_id, "type": event.type},
            )
            log.info("webhook.recorded", status=payment.status)
            if (
                event.type in HOLD_CONFIRMATION_EVENTS
                and payment.status == PaymentStatus.HELD_IN_ESCROW
            ):
                await self._attach_from_webhook(payment)
            return EventOutcome.APPLIED

        payment = await self._transition_payment(
            payment,
            transition,
            GATEWAY_ACTOR,
            event_id=event.event_id,
            metadata={"event_id": event.event_id, "type": event.type},
            **fields,
        )
        log.info("webhook.applied", transition=transition, status=payment.status)

        if transition == "hold_confirmed":
            if await self._attach_from_webhook(payment):
                await self._notify(
                    NotificationKind.PAYMENT_HELD,
                    payment,
                    customer_id=payment.payer_id,
                    provider_id=payment.payee_id,
                )
        elif transition == "hold_failed":
            await self._notify(
                NotificationKind.PAYMENT_FAILED, payment, customer_id=payment.payer_id
            )
        elif transition == "funds_released":
            await self._finish_job(payment, JobStatus.COMPLETED, GATEWAY_ACTOR)
            await self._notify(
                NotificationKind.FUNDS_RELEASED, payment, provider_id=payment.payee_id
            )
        elif transition == "funds_refunded":
            await self._finish_job(payment, JobStatus.CANCELLED, GATEWAY_ACTOR)
            await self._notify(
                NotificationKind.FUNDS_REFUNDED, payment, customer_id=payment.payer_id
            )
        return EventOutcome.APPLIED

    async def _attach_from_webhook(self, payment: EscrowPayment) -> bool:
        try:
            await self._attach_hold_to_job(payment)
        except StateConflictError as exc:
            # Already logged and refunded; the event itself was applied.
            logger.warning("webhook.hold_not_attached", error=exc.message)
            return False
        return True

    async def _locate_payment(self, event: GatewayEvent) -> EscrowPayment | None:
        metadata = event.metadata
        payment_id = _parse_uuid(metadata.get("payment_id"))
        if payment_id is not None:
            payment = await self._payments.get_payment(payment_id)
            if payment is not None:
                return payment
        if event.gateway_reference:
            payment = await self._payments.get_by_gateway_reference(event.gateway_reference)
            if payment is not None:
                return payment
        job_id = _parse_uuid(metadata.get("job_id"))
        if job_id is not None:
            return await self._payments.get_active_payment(job_id)
        return None

    # ------------------------------------------------------------------
    # Release / refund
    # ------------------------------------------------------------------

    async def release(
        self,
        job_id: uuid.UUID,
        requested_by: str,
        admin_override: bool = False,
    ) -> SettlementOutcome:
        """Capture the held funds for the provider and complete the job.

        The job is never marked completed unless the capture succeeded.
        """
        bind_escrow_context(job_id=str(job_id))
        job = await self._get_job_or_raise(job_id)
        if not admin_override and requested_by != job.customer_id:
            raise NotAuthorizedError(requested_by, f"release funds for job {job_id}")

        payment = await self._get_held_payment(job_id, "funds_released")
        if job.status in (JobStatus.REVIEW_PENDING, JobStatus.DISPUTED) or not admin_override:
            self._fire(JobStateMachine, job.status, "funds_released")
        else:
            self._fire(JobStateMachine, job.status, "admin_release")

        payment = await self._execute_settlement(payment, PendingAction.RELEASE, requested_by)
        job = await self._finish_job(payment, JobStatus.COMPLETED, requested_by)
        await self._notify(
            NotificationKind.FUNDS_RELEASED,
            payment,
            provider_id=payment.payee_id,
            customer_id=payment.payer_id,
        )
        return SettlementOutcome(
            payment_id=payment.id, payment_status=payment.status, job_status=job.status
        )

    async def refund(
        self,
        job_id: uuid.UUID,
        reason: str,
        requested_by: str,
        admin_override: bool = False,
    ) -> SettlementOutcome:
        """Return the held funds to the customer and cancel the job."""
        bind_escrow_context(job_id=str(job_id))
        job = await self._get_job_or_raise(job_id)
        if not admin_override and requested_by != job.assigned_provider_id:
            raise NotAuthorizedError(requested_by, f"refund job {job_id}")

        payment = await self._get_held_payment(job_id, "funds_refunded")
        self._fire(JobStateMachine, job.status, "refund_issued")

        payment = await self._execute_settlement(
            payment, PendingAction.REFUND, requested_by, reason=reason
        )
        job = await self._finish_job(payment, JobStatus.CANCELLED, requested_by)
        await self._notify(
            NotificationKind.FUNDS_REFUNDED,
            payment,
            customer_id=payment.payer_id,
            provider_id=payment.payee_id,
            reason=reason,
        )
        return SettlementOutcome(
            payment_id=payment.id, payment_status=payment.status, job_status=job.status
        )

    async def _get_held_payment(self, job_id: uuid.UUID, payment_event: str) -> EscrowPayment:
        payment = await self._payments.get_active_payment(job_id)
        if payment is None:
            raise PaymentNotFoundError(f"active payment for job {job_id}")
        bind_escrow_context(payment_id=str(payment.id))
        self._fire(PaymentStateMachine, payment.status, payment_event)
        return payment

    async def _execute_settlement(
        self,
        payment: EscrowPayment,
        action: PendingAction,
        actor: str,
        reason: str | None = None,
    ) -> EscrowPayment:
        """Claim the held record, move the money, then record the outcome.

        Returns the record in its settled status.
        """
        claimed = await self._claim(payment, action)
        if action == PendingAction.RELEASE:
            operation, call = "capture", self._gateway.capture_or_transfer
        else:
            operation, call = "refund", self._gateway.refund

        try:
            await self._call_gateway(
                operation, call(claimed.gateway_reference), user_message=FUNDS_REMAIN_HELD
            )
        except GatewayTimeoutError:
            # Claim stays in place: the webhook decides what happened.
            logger.warning("escrow.settlement_outcome_unknown", action=action)
            raise
        except GatewayError as exc:
            await self._drop_claim(claimed)
            raise GatewayError(
                exc.message, operation=operation, user_message=FUNDS_REMAIN_HELD
            ) from exc

        logger.info("escrow.gateway_settled", action=action, amount=claimed.amount)
        return await self._persist_settlement(claimed, action, actor, reason)

    async def _claim(self, payment: EscrowPayment, action: PendingAction) -> EscrowPayment:
        """Mark the held record as settling via ``action``.

        A claim left behind by an unanswered call for the same action is
        taken over: the version bump lets only one retrier through, and the
        gateway call it re-issues carries the original idempotency key.
        """
        if payment.pending_action is not None and payment.pending_action != action:
            raise StateConflictError(
                f"Payment {payment.id} already has a {payment.pending_action} in flight",
                code="SETTLEMENT_IN_FLIGHT",
                expected=PaymentStatus.HELD_IN_ESCROW,
                actual=payment.status,
            )
        if payment.gateway_reference is None:
            raise StateConflictError(
                f"Payment {payment.id} has no gateway reference yet",
                expected=PaymentStatus.HELD_IN_ESCROW,
                actual=payment.status,
            )
        if payment.pending_action == action:
            logger.info("escrow.settlement_reissued", action=action)
        return await self._payments.update_payment_status(
            payment.id,
            PaymentStatus.HELD_IN_ESCROW,
            PaymentStatus.HELD_IN_ESCROW,
            expected_version=payment.version,
            pending_action=action,
        )

    async def _drop_claim(self, claimed: EscrowPayment) -> None:
        try:
            await self._payments.update_payment_status(
                claimed.id,
                PaymentStatus.HELD_IN_ESCROW,
                PaymentStatus.HELD_IN_ESCROW,
                expected_version=claimed.version,
                pending_action=None,
            )
        except (StateConflictError, StoreError) as exc:
            logger.warning("escrow.claim_not_dropped", error=exc.message)

    async def _persist_settlement(
        self,
        claimed: EscrowPayment,
        action: PendingAction,
        actor: str,
        reason: str | None,
    ) -> EscrowPayment:
        if action == PendingAction.RELEASE:
            event_name, target = "funds_released", PaymentStatus.RELEASED
        else:
            event_name, target = "funds_refunded", PaymentStatus.REFUNDED
        metadata = {"reason": reason} if reason else None

        current = claimed
        last_error = ""
        for attempt in range(1, self._store_write_attempts + 1):
            try:
                return await self._transition_payment(
                    current, event_name, actor, metadata=metadata
                )
            except StateConflictError as exc:
                last_error = exc.message
            except StoreError as exc:
                last_error = exc.message
                logger.warning("escrow.store_write_retry", attempt=attempt, error=exc.message)
            try:
                reloaded = await self._payments.get_payment(claimed.id)
            except StoreError as exc:
                last_error = exc.message
                continue
            if reloaded is None:
                break
            if reloaded.status == target:
                return reloaded
            if reloaded.status != PaymentStatus.HELD_IN_ESCROW:
                break
            current = reloaded

        logger.error(
            "escrow.reconciliation_required",
            operation=event_name,
            payment_id=str(claimed.id),
            gateway_reference=claimed.gateway_reference,
            error=last_error,
        )
        raise ReconciliationRequiredError(event_name, str(claimed.id), last_error)

    async def _finish_job(self, payment: EscrowPayment, target: JobStatus, actor: str) -> Job:
        """Move the job this payment is attached to into ``target``."""
        last_error = ""
        for attempt in range(1, self._store_write_attempts + 1):
            try:
                job = await self._get_job_or_raise(payment.job_id)
            except StoreError as exc:
                last_error = exc.message
                continue
            if job.status == target:
                return job
            if job.payment_reference != payment.gateway_reference:
                logger.info("escrow.job_not_attached", job_status=job.status)
                return job

            event_name = _settling_event(job.status, target)
            if event_name is None:
                logger.warning("escrow.job_not_settled", job_status=job.status, target=target)
                return job
            try:
                updated = await self._jobs.update_job_status(job.id, job.status, target)
            except StateConflictError as exc:
                last_error = exc.message
                continue
            except StoreError as exc:
                last_error = exc.message
                logger.warning("escrow.store_write_retry", attempt=attempt, error=exc.message)
                continue
            await self._audit(
                job.id,
                _SETTLED_JOB_AUDIT_TYPES[target],
                old_status=job.status,
                new_status=target,
                payment_id=payment.id,
                actor=actor,
                metadata={"job_event": event_name},
            )
            return updated

        logger.error(
            "escrow.reconciliation_required",
            operation=f"job_{target}",
            payment_id=str(payment.id),
            error=last_error,
        )
        raise ReconciliationRequiredError(f"job_{target}", str(payment.id), last_error)

    # ------------------------------------------------------------------
    # Job transitions
    # ------------------------------------------------------------------

    async def submit_work(self, job_id: uuid.UUID, provider_id: str) -> Job:
        """Assigned provider marks the work complete: in_progress -> review_pending."""
        job = await self._get_job_or_raise(job_id)
        if provider_id != job.assigned_provider_id:
            raise NotAuthorizedError(provider_id, f"submit work for job {job_id}")
        job = await self._transition_job(job, "work_submitted", provider_id)
        await self._notify_job(NotificationKind.WORK_SUBMITTED, job, customer_id=job.customer_id)
        return job

    async def raise_dispute(self, job_id: uuid.UUID, raised_by: str, reason: str) -> Job:
        """Freeze the job until an admin releases or refunds."""
        job = await self._get_job_or_raise(job_id)
        if raised_by not in (job.customer_id, job.assigned_provider_id):
            raise NotAuthorizedError(raised_by, f"dispute job {job_id}")
        job = await self._transition_job(job, "dispute_raised", raised_by, reason=reason)
        await self._notify_job(
            NotificationKind.DISPUTE_RAISED,
            job,
            customer_id=job.customer_id,
            provider_id=job.assigned_provider_id,
            raised_by=raised_by,
            reason=reason,
        )
        return job

    async def cancel_job(self, job_id: uuid.UUID, requested_by: str) -> Job:
        """Customer withdraws an open job that has no payment in flight."""
        job = await self._get_job_or_raise(job_id)
        if requested_by != job.customer_id:
            raise NotAuthorizedError(requested_by, f"cancel job {job_id}")
        if await self._payments.get_active_payment(job_id) is not None:
            raise ActiveHoldExistsError(str(job_id))
        job = await self._transition_job(job, "job_cancelled", requested_by)
        await self._notify_job(NotificationKind.JOB_CANCELLED, job, customer_id=job.customer_id)
        return job

    async def _transition_job(
        self, job: Job, event_name: str, actor: str, **metadata: Any
    ) -> Job:
        new_status = JobStatus(self._fire(JobStateMachine, job.status, event_name))
        updated = await self._jobs.update_job_status(job.id, job.status, new_status)
        await self._audit(
            job.id,
            _JOB_AUDIT_TYPES[event_name],
            old_status=job.status,
            new_status=new_status,
            actor=actor,
            metadata=metadata or None,
        )
        logger.info(
            "job.transitioned", job_id=str(job.id), old_status=job.status, new_status=new_status
        )
        return updated

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_escrow_summary(self, job_id: uuid.UUID) -> dict[str, Any]:
        """Job and payment status with the events each can still take."""
        job = await self._get_job_or_raise(job_id)
        payments = await self._payments.list_for_job(job_id)
        latest = payments[0] if payments else None
        summary: dict[str, Any] = {
            "job_id": str(job.id),
            "job_status": job.status,
            "allowed_job_events": JobStateMachine(current_status=job.status).get_allowed_events(),
            "assigned_provider_id": job.assigned_provider_id,
            "payment": None,
        }
        if latest is not None:
            summary["payment"] = {
                "payment_id": str(latest.id),
                "status": latest.status,
                "amount": latest.amount,
                "currency": latest.currency,
                "gateway_reference": latest.gateway_reference,
                "pending_action": latest.pending_action,
                "applied_events": len(latest.external_event_ids),
                "allowed_events": PaymentStateMachine(
                    current_status=latest.status
                ).get_allowed_events(),
            }
        return summary

    async def get_events(self, job_id: uuid.UUID) -> list[AuditEvent]:
        await self._get_job_or_raise(job_id)
        return await self._events.get_by_job(job_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _transition_payment(
        self,
        payment: EscrowPayment,
        event_name: str,
        actor: str,
        event_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        **fields: Any,
    ) -> EscrowPayment:
        """Guard with the state machine, then compare-and-swap status + version."""
        new_status = PaymentStatus(self._fire(PaymentStateMachine, payment.status, event_name))
        if event_id is not None:
            fields["external_event_ids"] = append_event(payment, event_id)
        if new_status.is_terminal:
            fields["pending_action"] = None

        updated = await self._payments.update_payment_status(
            payment.id,
            payment.status,
            new_status,
            expected_version=payment.version,
            **fields,
        )
        await self._audit(
            payment.job_id,
            _PAYMENT_AUDIT_TYPES[event_name],
            old_status=payment.status,
            new_status=new_status,
            payment_id=payment.id,
            actor=actor,
            metadata=metadata,
        )
        logger.info(
            "escrow.payment_transitioned",
            old_status=payment.status,
            new_status=new_status,
            actor=actor,
        )
        return updated

    def _fire(self, machine: type[StateMachine], current_status: str, event_name: str) -> str:
        """Validate a transition; raises InvalidStateTransitionError if illegal."""
        try:
            return validate_transition(str(current_status), event_name, machine)
        except TransitionNotAllowed as err:
            raise InvalidStateTransitionError(str(current_status), event_name) from err

    async def _call_gateway(self, operation: str, call: Awaitable[Any], user_message: str) -> Any:
        try:
            return await asyncio.wait_for(call, timeout=self._gateway_timeout)
        except TimeoutError as exc:
            raise GatewayTimeoutError(
                operation, self._gateway_timeout, user_message=user_message
            ) from exc
        except GatewayTimeoutError as exc:
            exc.user_message = user_message
            raise

    async def _audit(
        self,
        job_id: uuid.UUID,
        event_type: EventType,
        new_status: str,
        old_status: str | None = None,
        payment_id: uuid.UUID | None = None,
        actor: str = SYSTEM_ACTOR,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        try:
            await self._events.record(
                AuditEvent(
                    job_id=job_id,
                    event_type=event_type,
                    old_status=old_status,
                    new_status=new_status,
                    payment_id=payment_id,
                    actor=actor,
                    metadata=metadata,
                )
            )
        except StoreError as exc:
            logger.error("audit.write_failed", event_type=event_type, error=exc.message)

    async def _notify(
        self, kind: NotificationKind, payment: EscrowPayment, **payload: Any
    ) -> None:
        await self._publish(
            TransitionRecord(
                kind=kind,
                job_id=payment.job_id,
                payload={
                    "payment_id": str(payment.id),
                    "amount": payment.amount,
                    "currency": payment.currency,
                    **payload,
                },
            )
        )

    async def _notify_job(self, kind: NotificationKind, job: Job, **payload: Any) -> None:
        await self._publish(TransitionRecord(kind=kind, job_id=job.id, payload=payload))

    async def _publish(self, record: TransitionRecord) -> None:
        # Notifications never fail a committed transition.
        try:
            await self._outbox.publish(record)
        except Exception as exc:  # noqa: BLE001
            logger.warning("notification.publish_failed", kind=record.kind, error=str(exc))

    async def _get_job_or_raise(self, job_id: uuid.UUID) -> Job:
        job = await self._jobs.get_job(job_id)
        if job is None:
            raise JobNotFoundError(str(job_id))
        return job

    async def _get_proposal_or_raise(self, proposal_id: uuid.UUID) -> Proposal:
        proposal = await self._proposals.get_proposal(proposal_id)
        if proposal is None:
            raise ProposalNotFoundError(str(proposal_id))
        return proposal

    async def _get_payment_or_raise(self, payment_id: uuid.UUID) -> EscrowPayment:
        payment = await self._payments.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        return payment


_JOB_AUDIT_TYPES = {
    "work_submitted": EventType.WORK_SUBMITTED,
    "dispute_raised": EventType.DISPUTE_RAISED,
    "job_cancelled": EventType.JOB_CANCELLED,
}


def _settling_event(current: JobStatus, target: JobStatus) -> str | None:
    allowed = set(JobStateMachine(current_status=current).get_allowed_events())
    for event_name in _SETTLING_JOB_EVENTS.get(target, ()):
        if event_name in allowed:
            return event_name
    return None


def _parse_uuid(value: Any) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _hold_metadata(payment: EscrowPayment, payee_account: str | None) -> dict[str, str]:
    """Metadata sent with a hold; identical on replay so the idempotency key matches."""
    metadata = {
        "payment_id": str(payment.id),
        "job_id": str(payment.job_id),
        "proposal_id": str(payment.proposal_id),
        "payer_id": payment.payer_id,
        "payee_id": payment.payee_id,
    }
    if payee_account:
        metadata["payee_account"] = payee_account
    return metadata
