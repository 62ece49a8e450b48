"""In-process record stores and notification outbox.

Used by the test suite, the simulation script and ``STORE_BACKEND=memory``.
Each operation yields to the event loop once (standing in for the network
round trip to a real store) and then performs its check-and-write without
awaiting again, which makes every write atomic with respect to other
coroutines, the same guarantee the SQL stores get from a conditional UPDATE.
"""

from __future__ import annotations

import asyncio
import dataclasses
from typing import TYPE_CHECKING, Any

from tradie_escrow.domain.enums import (
    JobStatus,
    PaymentStatus,
    ProposalStatus,
)
from tradie_escrow.domain.exceptions import (
    ActiveHoldExistsError,
    JobNotFoundError,
    PaymentNotFoundError,
    ProposalNotFoundError,
    StateConflictError,
)
from tradie_escrow.domain.models import utcnow

if TYPE_CHECKING:
    import uuid

    from tradie_escrow.domain.models import (
        AuditEvent,
        EscrowPayment,
        Job,
        Proposal,
        TransitionRecord,
    )


async def _round_trip() -> None:
    await asyncio.sleep(0)


class InMemoryJobStore:
    def __init__(self) -> None:
        self._jobs: dict[uuid.UUID, Job] = {}

    async def insert_job(self, job: Job) -> Job:
        await _round_trip()
        self._jobs[job.id] = job
        return job

    async def get_job(self, job_id: uuid.UUID) -> Job | None:
        await _round_trip()
        return self._jobs.get(job_id)

    async def update_job_status(
        self,
        job_id: uuid.UUID,
        expected_status: JobStatus,
        new_status: JobStatus,
        **fields: Any,
    ) -> Job:
        await _round_trip()
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(str(job_id))
        if job.status != expected_status:
            raise StateConflictError(
                f"Job {job_id} is {job.status}, expected {expected_status}",
                expected=expected_status,
                actual=job.status,
            )
        updated = dataclasses.replace(
            job,
            status=new_status,
            version=job.version + 1,
            updated_at=utcnow(),
            **fields,
        )
        self._jobs[job_id] = updated
        return updated


class InMemoryProposalStore:
    def __init__(self) -> None:
        self._proposals: dict[uuid.UUID, Proposal] = {}

    async def insert_proposal(self, proposal: Proposal) -> Proposal:
        await _round_trip()
        self._proposals[proposal.id] = proposal
        return proposal

    async def get_proposal(self, proposal_id: uuid.UUID) -> Proposal | None:
        await _round_trip()
        return self._proposals.get(proposal_id)

    async def list_for_job(self, job_id: uuid.UUID) -> list[Proposal]:
        await _round_trip()
        return sorted(
            (p for p in self._proposals.values() if p.job_id == job_id),
            key=lambda p: p.created_at,
        )

    async def update_proposal_status(
        self,
        proposal_id: uuid.UUID,
        expected_status: ProposalStatus,
        new_status: ProposalStatus,
    ) -> Proposal:
        await _round_trip()
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise ProposalNotFoundError(str(proposal_id))
        if proposal.status != expected_status:
            raise StateConflictError(
                f"Proposal {proposal_id} is {proposal.status}, expected {expected_status}",
                expected=expected_status,
                actual=proposal.status,
            )
        if new_status == ProposalStatus.ACCEPTED and any(
            p.job_id == proposal.job_id
            and p.id != proposal.id
            and p.status == ProposalStatus.ACCEPTED
            for p in self._proposals.values()
        ):
            raise StateConflictError(
                f"Job {proposal.job_id} already has an accepted proposal",
                expected=ProposalStatus.PENDING,
                actual=ProposalStatus.ACCEPTED,
            )
        updated = dataclasses.replace(proposal, status=new_status)
        self._proposals[proposal_id] = updated
        return updated


class InMemoryPaymentStore:
    def __init__(self) -> None:
        self._payments: dict[uuid.UUID, EscrowPayment] = {}

    async def insert_payment(self, payment: EscrowPayment) -> EscrowPayment:
        await _round_trip()
        if any(p.job_id == payment.job_id and p.is_active for p in self._payments.values()):
            raise ActiveHoldExistsError(str(payment.job_id))
        self._payments[payment.id] = payment
        return payment

    async def get_payment(self, payment_id: uuid.UUID) -> EscrowPayment | None:
        await _round_trip()
        return self._payments.get(payment_id)

    async def get_active_payment(self, job_id: uuid.UUID) -> EscrowPayment | None:
        await _round_trip()
        for payment in self._payments.values():
            if payment.job_id == job_id and payment.is_active:
                return payment
        return None

    async def get_by_gateway_reference(self, reference: str) -> EscrowPayment | None:
        await _round_trip()
        for payment in self._payments.values():
            if payment.gateway_reference == reference:
                return payment
        return None

    async def list_for_job(self, job_id: uuid.UUID) -> list[EscrowPayment]:
        await _round_trip()
        return sorted(
            (p for p in self._payments.values() if p.job_id == job_id),
            key=lambda p: p.created_at,
            reverse=True,
        )

    async def update_payment_status(
        self,
        payment_id: uuid.UUID,
        expected_status: PaymentStatus,
        new_status: PaymentStatus,
        *,
        expected_version: int | None = None,
        **fields: Any,
    ) -> EscrowPayment:
        await _round_trip()
        payment = self._payments.get(payment_id)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        if payment.status != expected_status or (
            expected_version is not None and payment.version != expected_version
        ):
            raise StateConflictError(
                f"Payment {payment_id} is {payment.status} v{payment.version}, "
                f"expected {expected_status} v{expected_version}",
                expected=expected_status,
                actual=payment.status,
            )
        if "external_event_ids" in fields:
            fields["external_event_ids"] = tuple(fields["external_event_ids"])
        updated = dataclasses.replace(
            payment,
            status=new_status,
            version=payment.version + 1,
            updated_at=utcnow(),
            **fields,
        )
        self._payments[payment_id] = updated
        return updated


class InMemoryEventLog:
    def __init__(self) -> None:
        self._events: list[AuditEvent] = []

    async def record(self, event: AuditEvent) -> AuditEvent:
        await _round_trip()
        self._events.append(event)
        return event

    async def get_by_job(self, job_id: uuid.UUID) -> list[AuditEvent]:
        await _round_trip()
        return [e for e in self._events if e.job_id == job_id]


class InMemoryProviderAccountStore:
    def __init__(self) -> None:
        self._accounts: dict[str, str] = {}

    async def get_payout_account(self, provider_id: str) -> str | None:
        await _round_trip()
        return self._accounts.get(provider_id)

    async def set_payout_account(self, provider_id: str, account_id: str) -> None:
        await _round_trip()
        self._accounts[provider_id] = account_id


class InMemoryOutbox:
    """Transition outbox backed by an asyncio.Queue."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[TransitionRecord] = asyncio.Queue()

    async def publish(self, record: TransitionRecord) -> None:
        self._queue.put_nowait(record)

    async def consume(self, timeout: float = 1.0) -> TransitionRecord | None:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except TimeoutError:
            return None

    def pending(self) -> int:
        return self._queue.qsize()
