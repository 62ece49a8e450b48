"""Marketplace Service: jobs and quotes ahead of escrow.

Creates jobs, takes quotes from providers and lets the customer turn
quotes down. Providers register the processor account their payouts land
in. Accepting a quote starts the escrow hold and therefore lives in
EscrowOrchestrator.accept_proposal.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from tradie_escrow.domain.enums import (
    EventType,
    JobStatus,
    NotificationKind,
    ProposalStatus,
)
from tradie_escrow.domain.exceptions import (
    InvalidAmountError,
    InvalidStateTransitionError,
    JobNotFoundError,
    NotAuthorizedError,
    ProposalNotFoundError,
    StoreError,
    ValidationError,
)
from tradie_escrow.domain.models import AuditEvent, Job, Proposal, TransitionRecord
from tradie_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from tradie_escrow.domain.ports import (
        EventLog,
        JobStore,
        ProposalStore,
        ProviderAccountStore,
        TransitionOutbox,
    )

logger = get_logger(__name__)


class MarketplaceService:
    """Job listings and provider quotes."""

    def __init__(
        self,
        jobs: JobStore,
        proposals: ProposalStore,
        events: EventLog,
        outbox: TransitionOutbox,
        payout_accounts: ProviderAccountStore | None = None,
    ) -> None:
        self._jobs = jobs
        self._proposals = proposals
        self._events = events
        self._outbox = outbox
        self._payout_accounts = payout_accounts

    async def create_job(
        self,
        customer_id: str,
        title: str,
        budget_min: int | None = None,
        budget_max: int | None = None,
    ) -> Job:
        """Create a new job in OPEN state."""
        if not title.strip():
            raise ValidationError("Job title must not be empty")
        for bound in (budget_min, budget_max):
            if bound is not None and bound < 0:
                raise InvalidAmountError(bound)
        if budget_min is not None and budget_max is not None and budget_min > budget_max:
            raise ValidationError(
                f"budget_min {budget_min} exceeds budget_max {budget_max}",
                code="INVALID_BUDGET",
            )

        job = await self._jobs.insert_job(
            Job(
                customer_id=customer_id,
                title=title.strip(),
                budget_min=budget_min,
                budget_max=budget_max,
            )
        )
        await self._record(job.id, EventType.JOB_CREATED, JobStatus.OPEN, customer_id)
        logger.info("job.created", job_id=str(job.id), customer_id=customer_id)
        return job

    async def submit_proposal(
        self,
        job_id: uuid.UUID,
        provider_id: str,
        price: int,
        message: str | None = None,
    ) -> Proposal:
        """A provider quotes ``price`` (minor units) for an open job."""
        if isinstance(price, bool) or not isinstance(price, int) or price <= 0:
            raise InvalidAmountError(price)
        job = await self.get_job(job_id)
        if provider_id == job.customer_id:
            raise NotAuthorizedError(provider_id, "quote on their own job")
        if job.status != JobStatus.OPEN:
            raise InvalidStateTransitionError(job.status, "proposal_submitted")

        proposal = await self._proposals.insert_proposal(
            Proposal(job_id=job_id, provider_id=provider_id, price=price, message=message)
        )
        await self._record(
            job_id,
            EventType.PROPOSAL_SUBMITTED,
            ProposalStatus.PENDING,
            provider_id,
            metadata={"proposal_id": str(proposal.id), "price": price},
        )
        await self._publish(
            TransitionRecord(
                kind=NotificationKind.PROPOSAL_RECEIVED,
                job_id=job_id,
                payload={
                    "customer_id": job.customer_id,
                    "provider_id": provider_id,
                    "proposal_id": str(proposal.id),
                    "price": price,
                },
            )
        )
        logger.info("proposal.submitted", job_id=str(job_id), proposal_id=str(proposal.id))
        return proposal

    async def reject_proposal(self, proposal_id: uuid.UUID, customer_id: str) -> Proposal:
        """The job's customer turns a pending quote down."""
        proposal = await self._proposals.get_proposal(proposal_id)
        if proposal is None:
            raise ProposalNotFoundError(str(proposal_id))
        job = await self.get_job(proposal.job_id)
        if customer_id != job.customer_id:
            raise NotAuthorizedError(customer_id, f"reject proposal {proposal_id}")

        proposal = await self._proposals.update_proposal_status(
            proposal_id, ProposalStatus.PENDING, ProposalStatus.REJECTED
        )
        await self._record(
            job.id,
            EventType.PROPOSAL_REJECTED,
            ProposalStatus.REJECTED,
            customer_id,
            old_status=ProposalStatus.PENDING,
            metadata={"proposal_id": str(proposal_id)},
        )
        return proposal

    async def get_job(self, job_id: uuid.UUID) -> Job:
        job = await self._jobs.get_job(job_id)
        if job is None:
            raise JobNotFoundError(str(job_id))
        return job

    async def list_proposals(self, job_id: uuid.UUID) -> list[Proposal]:
        await self.get_job(job_id)
        return await self._proposals.list_for_job(job_id)

    async def register_payout_account(self, provider_id: str, account_id: str) -> str:
        """Record the connected account a provider is paid into; replaces any earlier one."""
        account_id = account_id.strip()
        if not account_id or any(c.isspace() for c in account_id):
            raise ValidationError(
                f"Invalid payout account id {account_id!r}", code="INVALID_PAYOUT_ACCOUNT"
            )
        if self._payout_accounts is None:
            raise ValidationError(
                "Payout accounts are not configured", code="PAYOUT_ACCOUNTS_UNAVAILABLE"
            )
        await self._payout_accounts.set_payout_account(provider_id, account_id)
        logger.info("provider.payout_account_registered", provider_id=provider_id)
        return account_id

    async def get_payout_account(self, provider_id: str) -> str | None:
        if self._payout_accounts is None:
            return None
        return await self._payout_accounts.get_payout_account(provider_id)

    async def _record(
        self,
        job_id: uuid.UUID,
        event_type: EventType,
        new_status: str,
        actor: str,
        old_status: str | None = None,
        metadata: dict | None = None,
    ) -> None:
        try:
            await self._events.record(
                AuditEvent(
                    job_id=job_id,
                    event_type=event_type,
                    old_status=old_status,
                    new_status=new_status,
                    actor=actor,
                    metadata=metadata,
                )
            )
        except StoreError as exc:
            logger.error("audit.write_failed", event_type=event_type, error=exc.message)

    async def _publish(self, record: TransitionRecord) -> None:
        try:
            await self._outbox.publish(record)
        except Exception as exc:  # noqa: BLE001
            logger.warning("notification.publish_failed", kind=record.kind, error=str(exc))
