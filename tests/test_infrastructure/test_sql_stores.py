"""Tests for the SQL record stores on a temporary SQLite database."""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass

import pytest
import pytest_asyncio

from tradie_escrow.config import Settings
from tradie_escrow.domain.enums import JobStatus, PaymentStatus, PendingAction, ProposalStatus
from tradie_escrow.domain.exceptions import (
    ActiveHoldExistsError,
    JobNotFoundError,
    StateConflictError,
)
from tradie_escrow.domain.models import AuditEvent, EscrowPayment, Job, Proposal
from tradie_escrow.infrastructure.database import (
    SqlEventLog,
    SqlJobStore,
    SqlPaymentStore,
    SqlProviderAccountStore,
    SqlProposalStore,
    close_db,
    get_session_factory,
    init_db,
)


@dataclass
class SqlStores:
    jobs: SqlJobStore
    proposals: SqlProposalStore
    payments: SqlPaymentStore
    events: SqlEventLog
    payout_accounts: SqlProviderAccountStore


@pytest_asyncio.fixture
async def sql(tmp_path) -> AsyncIterator[SqlStores]:
    settings = Settings(
        app_env="test",
        store_backend="sql",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}",
    )
    await init_db(settings)
    factory = get_session_factory(settings)
    yield SqlStores(
        jobs=SqlJobStore(factory),
        proposals=SqlProposalStore(factory),
        payments=SqlPaymentStore(factory),
        events=SqlEventLog(factory),
        payout_accounts=SqlProviderAccountStore(factory),
    )
    await close_db()


async def _job_with_quote(sql: SqlStores) -> tuple[Job, Proposal]:
    job = await sql.jobs.insert_job(Job(customer_id="cust", title="Fix gutter"))
    proposal = await sql.proposals.insert_proposal(
        Proposal(job_id=job.id, provider_id="tradie", price=8_000)
    )
    return job, proposal


def _payment(job: Job, proposal: Proposal) -> EscrowPayment:
    return EscrowPayment(
        job_id=job.id,
        proposal_id=proposal.id,
        payer_id=job.customer_id,
        payee_id=proposal.provider_id,
        amount=proposal.price,
        currency="aud",
    )


class TestSqlJobStore:
    @pytest.mark.asyncio
    async def test_round_trip(self, sql: SqlStores) -> None:
        job = await sql.jobs.insert_job(
            Job(customer_id="cust", title="Fix gutter", budget_min=100, budget_max=500)
        )
        loaded = await sql.jobs.get_job(job.id)
        assert loaded.title == "Fix gutter"
        assert loaded.status == JobStatus.OPEN
        assert loaded.budget_max == 500

    @pytest.mark.asyncio
    async def test_conditional_update(self, sql: SqlStores) -> None:
        job = await sql.jobs.insert_job(Job(customer_id="cust", title="Fix gutter"))

        updated = await sql.jobs.update_job_status(
            job.id,
            JobStatus.OPEN,
            JobStatus.IN_PROGRESS,
            assigned_provider_id="tradie",
            payment_reference="pi_1",
        )
        assert updated.status == JobStatus.IN_PROGRESS
        assert updated.assigned_provider_id == "tradie"
        assert updated.version == job.version + 1

        with pytest.raises(StateConflictError) as exc_info:
            await sql.jobs.update_job_status(job.id, JobStatus.OPEN, JobStatus.CANCELLED)
        assert exc_info.value.actual == JobStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_update_missing_job(self, sql: SqlStores) -> None:
        with pytest.raises(JobNotFoundError):
            await sql.jobs.update_job_status(uuid.uuid4(), JobStatus.OPEN, JobStatus.CANCELLED)


class TestSqlProposalStore:
    @pytest.mark.asyncio
    async def test_one_accepted_proposal_per_job(self, sql: SqlStores) -> None:
        job, first = await _job_with_quote(sql)
        second = await sql.proposals.insert_proposal(
            Proposal(job_id=job.id, provider_id="other", price=7_000)
        )

        await sql.proposals.update_proposal_status(
            first.id, ProposalStatus.PENDING, ProposalStatus.ACCEPTED
        )
        with pytest.raises(StateConflictError):
            await sql.proposals.update_proposal_status(
                second.id, ProposalStatus.PENDING, ProposalStatus.ACCEPTED
            )
        assert (await sql.proposals.get_proposal(second.id)).status == ProposalStatus.PENDING

    @pytest.mark.asyncio
    async def test_list_for_job(self, sql: SqlStores) -> None:
        job, proposal = await _job_with_quote(sql)
        assert [p.id for p in await sql.proposals.list_for_job(job.id)] == [proposal.id]


class TestSqlPaymentStore:
    @pytest.mark.asyncio
    async def test_one_active_payment_per_job(self, sql: SqlStores) -> None:
        job, proposal = await _job_with_quote(sql)
        await sql.payments.insert_payment(_payment(job, proposal))

        with pytest.raises(ActiveHoldExistsError):
            await sql.payments.insert_payment(_payment(job, proposal))

    @pytest.mark.asyncio
    async def test_terminal_payment_frees_the_job(self, sql: SqlStores) -> None:
        job, proposal = await _job_with_quote(sql)
        first = await sql.payments.insert_payment(_payment(job, proposal))
        await sql.payments.update_payment_status(
            first.id, PaymentStatus.PENDING, PaymentStatus.FAILED, expected_version=0
        )

        second = await sql.payments.insert_payment(_payment(job, proposal))
        assert (await sql.payments.get_active_payment(job.id)).id == second.id

    @pytest.mark.asyncio
    async def test_version_guard_and_ledger(self, sql: SqlStores) -> None:
        job, proposal = await _job_with_quote(sql)
        payment = await sql.payments.insert_payment(_payment(job, proposal))

        held = await sql.payments.update_payment_status(
            payment.id,
            PaymentStatus.PENDING,
            PaymentStatus.HELD_IN_ESCROW,
            expected_version=0,
            gateway_reference="pi_42",
            external_event_ids=("evt_1",),
        )
        assert held.version == 1
        assert held.external_event_ids == ("evt_1",)
        assert (await sql.payments.get_by_gateway_reference("pi_42")).id == payment.id

        # A writer holding the old version loses.
        with pytest.raises(StateConflictError):
            await sql.payments.update_payment_status(
                payment.id,
                PaymentStatus.HELD_IN_ESCROW,
                PaymentStatus.HELD_IN_ESCROW,
                expected_version=0,
                pending_action=PendingAction.REFUND,
            )

        claimed = await sql.payments.update_payment_status(
            payment.id,
            PaymentStatus.HELD_IN_ESCROW,
            PaymentStatus.HELD_IN_ESCROW,
            expected_version=1,
            pending_action=PendingAction.RELEASE,
        )
        assert claimed.pending_action == PendingAction.RELEASE


class TestSqlEventLog:
    @pytest.mark.asyncio
    async def test_events_in_order(self, sql: SqlStores) -> None:
        job, _ = await _job_with_quote(sql)
        for event_type, status in (("JOB_CREATED", "open"), ("JOB_STARTED", "in_progress")):
            await sql.events.record(
                AuditEvent(
                    job_id=job.id,
                    event_type=event_type,
                    new_status=status,
                    metadata={"source": "test"},
                )
            )

        events = await sql.events.get_by_job(job.id)
        assert [e.event_type for e in events] == ["JOB_CREATED", "JOB_STARTED"]
        assert events[0].metadata == {"source": "test"}


class TestSqlProviderAccountStore:
    @pytest.mark.asyncio
    async def test_set_get_and_overwrite(self, sql: SqlStores) -> None:
        assert await sql.payout_accounts.get_payout_account("tradie") is None

        await sql.payout_accounts.set_payout_account("tradie", "acct_1")
        assert await sql.payout_accounts.get_payout_account("tradie") == "acct_1"

        await sql.payout_accounts.set_payout_account("tradie", "acct_2")
        assert await sql.payout_accounts.get_payout_account("tradie") == "acct_2"
        assert await sql.payout_accounts.get_payout_account("someone_else") is None
