"""SQL record stores.

Unlike request-scoped repositories, each method here runs in its own short
transaction taken from the session factory: the orchestrator calls the
gateway between store writes, and a row lock must never be held across a
network call to the payment processor. Conditional writes are single
``UPDATE ... WHERE status = :expected`` statements; a zero rowcount is
turned into StateConflictError (or NotFound when the row is missing).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from tradie_escrow.domain.enums import (
    ACTIVE_PAYMENT_STATUSES,
    JobStatus,
    PaymentStatus,
    PendingAction,
    ProposalStatus,
)
from tradie_escrow.domain.exceptions import (
    ActiveHoldExistsError,
    JobNotFoundError,
    PaymentNotFoundError,
    ProposalNotFoundError,
    StateConflictError,
    StoreError,
)
from tradie_escrow.domain.models import (
    AuditEvent,
    EscrowPayment,
    Job,
    Proposal,
    utcnow,
)
from tradie_escrow.infrastructure.database.orm_models import (
    EscrowEventRow,
    EscrowPaymentRow,
    JobRow,
    ProposalRow,
    ProviderPayoutAccountRow,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


def _plain(value: Any) -> Any:
    """Enum members are stored as their string value."""
    return value.value if hasattr(value, "value") else value


def _to_job(row: JobRow) -> Job:
    return Job(
        id=row.id,
        customer_id=row.customer_id,
        title=row.title,
        status=JobStatus(row.status),
        assigned_provider_id=row.assigned_provider_id,
        payment_reference=row.payment_reference,
        budget_min=row.budget_min,
        budget_max=row.budget_max,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_proposal(row: ProposalRow) -> Proposal:
    return Proposal(
        id=row.id,
        job_id=row.job_id,
        provider_id=row.provider_id,
        price=row.price,
        status=ProposalStatus(row.status),
        message=row.message,
        created_at=row.created_at,
    )


def _to_payment(row: EscrowPaymentRow) -> EscrowPayment:
    return EscrowPayment(
        id=row.id,
        job_id=row.job_id,
        proposal_id=row.proposal_id,
        payer_id=row.payer_id,
        payee_id=row.payee_id,
        amount=row.amount,
        currency=row.currency,
        status=PaymentStatus(row.status),
        gateway_reference=row.gateway_reference,
        external_event_ids=tuple(row.external_event_ids or ()),
        pending_action=PendingAction(row.pending_action) if row.pending_action else None,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_event(row: EscrowEventRow) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        job_id=row.job_id,
        payment_id=row.payment_id,
        event_type=row.event_type,
        old_status=row.old_status,
        new_status=row.new_status,
        actor=row.actor,
        metadata=row.metadata_json,
        created_at=row.created_at,
    )


class _SqlStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _fetch_one(self, stmt):  # noqa: ANN001, ANN202
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return result.scalar_one_or_none()
        except OperationalError as exc:
            raise StoreError(str(exc)) from exc

    async def _fetch_all(self, stmt):  # noqa: ANN001, ANN202
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except OperationalError as exc:
            raise StoreError(str(exc)) from exc

    async def _add(self, row: Any) -> None:
        try:
            async with self._session_factory.begin() as session:
                session.add(row)
                await session.flush()
        except OperationalError as exc:
            raise StoreError(str(exc)) from exc

    async def _conditional_update(self, stmt) -> int:  # noqa: ANN001
        """Execute a guarded UPDATE and return the number of rows it touched."""
        try:
            async with self._session_factory.begin() as session:
                result = await session.execute(
                    stmt.execution_options(synchronize_session=False)
                )
                return result.rowcount
        except OperationalError as exc:
            raise StoreError(str(exc)) from exc


class SqlJobStore(_SqlStore):
    """Data access for jobs."""

    async def insert_job(self, job: Job) -> Job:
        await self._add(
            JobRow(
                id=job.id,
                customer_id=job.customer_id,
                title=job.title,
                status=job.status.value,
                assigned_provider_id=job.assigned_provider_id,
                payment_reference=job.payment_reference,
                budget_min=job.budget_min,
                budget_max=job.budget_max,
                version=job.version,
                created_at=job.created_at,
                updated_at=job.updated_at,
            )
        )
        return job

    async def get_job(self, job_id: uuid.UUID) -> Job | None:
        row = await self._fetch_one(select(JobRow).where(JobRow.id == job_id))
        return _to_job(row) if row is not None else None

    async def update_job_status(
        self,
        job_id: uuid.UUID,
        expected_status: JobStatus,
        new_status: JobStatus,
        **fields: Any,
    ) -> Job:
        """Compare-and-swap the job status (call AFTER state machine validation)."""
        touched = await self._conditional_update(
            update(JobRow)
            .where(JobRow.id == job_id, JobRow.status == expected_status.value)
            .values(
                status=new_status.value,
                version=JobRow.version + 1,
                updated_at=utcnow(),
                **{key: _plain(value) for key, value in fields.items()},
            )
        )
        current = await self.get_job(job_id)
        if current is None:
            raise JobNotFoundError(str(job_id))
        if touched == 0:
            raise StateConflictError(
                f"Job {job_id} is {current.status}, expected {expected_status}",
                expected=expected_status,
                actual=current.status,
            )
        return current


class SqlProposalStore(_SqlStore):
    """Data access for proposals."""

    async def insert_proposal(self, proposal: Proposal) -> Proposal:
        await self._add(
            ProposalRow(
                id=proposal.id,
                job_id=proposal.job_id,
                provider_id=proposal.provider_id,
                price=proposal.price,
                status=proposal.status.value,
                message=proposal.message,
                created_at=proposal.created_at,
            )
        )
        return proposal

    async def get_proposal(self, proposal_id: uuid.UUID) -> Proposal | None:
        row = await self._fetch_one(select(ProposalRow).where(ProposalRow.id == proposal_id))
        return _to_proposal(row) if row is not None else None

    async def list_for_job(self, job_id: uuid.UUID) -> list[Proposal]:
        rows = await self._fetch_all(
            select(ProposalRow)
            .where(ProposalRow.job_id == job_id)
            .order_by(ProposalRow.created_at.asc())
        )
        return [_to_proposal(row) for row in rows]

    async def update_proposal_status(
        self,
        proposal_id: uuid.UUID,
        expected_status: ProposalStatus,
        new_status: ProposalStatus,
    ) -> Proposal:
        try:
            touched = await self._conditional_update(
                update(ProposalRow)
                .where(
                    ProposalRow.id == proposal_id,
                    ProposalRow.status == expected_status.value,
                )
                .values(status=new_status.value)
            )
        except IntegrityError as exc:
            # uq_proposal_accepted_per_job: another proposal already accepted
            raise StateConflictError(
                f"Proposal {proposal_id}: job already has an accepted proposal",
                expected=expected_status,
                actual=ProposalStatus.ACCEPTED,
            ) from exc
        current = await self.get_proposal(proposal_id)
        if current is None:
            raise ProposalNotFoundError(str(proposal_id))
        if touched == 0:
            raise StateConflictError(
                f"Proposal {proposal_id} is {current.status}, expected {expected_status}",
                expected=expected_status,
                actual=current.status,
            )
        return current


class SqlPaymentStore(_SqlStore):
    """Data access for escrow payment records."""

    async def insert_payment(self, payment: EscrowPayment) -> EscrowPayment:
        try:
            await self._add(
                EscrowPaymentRow(
                    id=payment.id,
                    job_id=payment.job_id,
                    proposal_id=payment.proposal_id,
                    payer_id=payment.payer_id,
                    payee_id=payment.payee_id,
                    amount=payment.amount,
                    currency=payment.currency,
                    status=payment.status.value,
                    gateway_reference=payment.gateway_reference,
                    external_event_ids=list(payment.external_event_ids),
                    pending_action=_plain(payment.pending_action),
                    version=payment.version,
                    created_at=payment.created_at,
                    updated_at=payment.updated_at,
                )
            )
        except IntegrityError as exc:
            # uq_payment_active_per_job
            raise ActiveHoldExistsError(str(payment.job_id)) from exc
        return payment

    async def get_payment(self, payment_id: uuid.UUID) -> EscrowPayment | None:
        row = await self._fetch_one(
            select(EscrowPaymentRow).where(EscrowPaymentRow.id == payment_id)
        )
        return _to_payment(row) if row is not None else None

    async def get_active_payment(self, job_id: uuid.UUID) -> EscrowPayment | None:
        row = await self._fetch_one(
            select(EscrowPaymentRow).where(
                EscrowPaymentRow.job_id == job_id,
                EscrowPaymentRow.status.in_([s.value for s in ACTIVE_PAYMENT_STATUSES]),
            )
        )
        return _to_payment(row) if row is not None else None

    async def get_by_gateway_reference(self, reference: str) -> EscrowPayment | None:
        rows = await self._fetch_all(
            select(EscrowPaymentRow)
            .where(EscrowPaymentRow.gateway_reference == reference)
            .order_by(EscrowPaymentRow.created_at.desc())
        )
        return _to_payment(rows[0]) if rows else None

    async def list_for_job(self, job_id: uuid.UUID) -> list[EscrowPayment]:
        rows = await self._fetch_all(
            select(EscrowPaymentRow)
            .where(EscrowPaymentRow.job_id == job_id)
            .order_by(EscrowPaymentRow.created_at.desc())
        )
        return [_to_payment(row) for row in rows]

    async def update_payment_status(
        self,
        payment_id: uuid.UUID,
        expected_status: PaymentStatus,
        new_status: PaymentStatus,
        *,
        expected_version: int | None = None,
        **fields: Any,
    ) -> EscrowPayment:
        """Compare-and-swap status (+version); the ledger rides in ``fields``."""
        conditions = [
            EscrowPaymentRow.id == payment_id,
            EscrowPaymentRow.status == expected_status.value,
        ]
        if expected_version is not None:
            conditions.append(EscrowPaymentRow.version == expected_version)

        values = {key: _plain(value) for key, value in fields.items()}
        if "external_event_ids" in values:
            values["external_event_ids"] = list(values["external_event_ids"])

        touched = await self._conditional_update(
            update(EscrowPaymentRow)
            .where(*conditions)
            .values(
                status=new_status.value,
                version=EscrowPaymentRow.version + 1,
                updated_at=utcnow(),
                **values,
            )
        )
        current = await self.get_payment(payment_id)
        if current is None:
            raise PaymentNotFoundError(str(payment_id))
        if touched == 0:
            raise StateConflictError(
                f"Payment {payment_id} is {current.status} v{current.version}, "
                f"expected {expected_status} v{expected_version}",
                expected=expected_status,
                actual=current.status,
            )
        return current


class SqlEventLog(_SqlStore):
    """Data access for the append-only audit event log."""

    async def record(self, event: AuditEvent) -> AuditEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        await self._add(
            EscrowEventRow(
                id=event.id,
                job_id=event.job_id,
                payment_id=event.payment_id,
                event_type=event.event_type,
                old_status=event.old_status,
                new_status=event.new_status,
                actor=event.actor,
                metadata_json=event.metadata,
                created_at=event.created_at,
            )
        )
        return event

    async def get_by_job(self, job_id: uuid.UUID) -> list[AuditEvent]:
        rows = await self._fetch_all(
            select(EscrowEventRow)
            .where(EscrowEventRow.job_id == job_id)
            .order_by(EscrowEventRow.created_at.asc())
        )
        return [_to_event(row) for row in rows]


class SqlProviderAccountStore(_SqlStore):
    """Data access for provider payout accounts."""

    async def get_payout_account(self, provider_id: str) -> str | None:
        row = await self._fetch_one(
            select(ProviderPayoutAccountRow).where(
                ProviderPayoutAccountRow.provider_id == provider_id
            )
        )
        return row.account_id if row is not None else None

    async def set_payout_account(self, provider_id: str, account_id: str) -> None:
        try:
            async with self._session_factory.begin() as session:
                await session.merge(
                    ProviderPayoutAccountRow(
                        provider_id=provider_id, account_id=account_id, updated_at=utcnow()
                    )
                )
        except OperationalError as exc:
            raise StoreError(str(exc)) from exc
