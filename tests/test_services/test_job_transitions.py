"""Tests for job transitions that do not move money."""

from __future__ import annotations

import pytest
from conftest import CUSTOMER, OTHER_PROVIDER, PROVIDER, Stores, held_job, post_job_with_quote

from tradie_escrow.domain.enums import JobStatus, NotificationKind, PaymentStatus
from tradie_escrow.domain.exceptions import (
    ActiveHoldExistsError,
    InvalidStateTransitionError,
    JobNotFoundError,
    NotAuthorizedError,
)
from tradie_escrow.gateways.mock import MockGateway
from tradie_escrow.services.escrow_orchestrator import EscrowOrchestrator
from tradie_escrow.services.marketplace_service import MarketplaceService


class TestSubmitWork:
    @pytest.mark.asyncio
    async def test_assigned_provider_submits(
        self,
        orchestrator: EscrowOrchestrator,
        marketplace: MarketplaceService,
        stores: Stores,
    ) -> None:
        job = await held_job(marketplace, orchestrator)
        job = await orchestrator.submit_work(job.id, provider_id=PROVIDER)
        assert job.status == JobStatus.REVIEW_PENDING

        kinds = []
        while (record := await stores.outbox.consume(timeout=0.01)) is not None:
            kinds.append(record.kind)
        assert kinds[-1] == NotificationKind.WORK_SUBMITTED

    @pytest.mark.asyncio
    async def test_other_provider_cannot_submit(
        self, orchestrator: EscrowOrchestrator, marketplace: MarketplaceService
    ) -> None:
        job = await held_job(marketplace, orchestrator)
        with pytest.raises(NotAuthorizedError):
            await orchestrator.submit_work(job.id, provider_id=OTHER_PROVIDER)

    @pytest.mark.asyncio
    async def test_cannot_submit_twice(
        self, orchestrator: EscrowOrchestrator, marketplace: MarketplaceService
    ) -> None:
        job = await held_job(marketplace, orchestrator)
        await orchestrator.submit_work(job.id, provider_id=PROVIDER)
        with pytest.raises(InvalidStateTransitionError):
            await orchestrator.submit_work(job.id, provider_id=PROVIDER)


class TestDispute:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("raised_by", [CUSTOMER, PROVIDER])
    async def test_either_party_disputes(
        self,
        orchestrator: EscrowOrchestrator,
        marketplace: MarketplaceService,
        raised_by: str,
    ) -> None:
        job = await held_job(marketplace, orchestrator)
        job = await orchestrator.raise_dispute(job.id, raised_by=raised_by, reason="Scope changed")
        assert job.status == JobStatus.DISPUTED

    @pytest.mark.asyncio
    async def test_stranger_cannot_dispute(
        self, orchestrator: EscrowOrchestrator, marketplace: MarketplaceService
    ) -> None:
        job = await held_job(marketplace, orchestrator)
        with pytest.raises(NotAuthorizedError):
            await orchestrator.raise_dispute(job.id, raised_by=OTHER_PROVIDER, reason="Hmm")

    @pytest.mark.asyncio
    async def test_open_job_cannot_be_disputed(
        self, orchestrator: EscrowOrchestrator, marketplace: MarketplaceService
    ) -> None:
        job, _ = await post_job_with_quote(marketplace)
        with pytest.raises(InvalidStateTransitionError):
            await orchestrator.raise_dispute(job.id, raised_by=CUSTOMER, reason="Too slow")

    @pytest.mark.asyncio
    async def test_disputed_job_freezes_work(
        self, orchestrator: EscrowOrchestrator, marketplace: MarketplaceService
    ) -> None:
        job = await held_job(marketplace, orchestrator)
        await orchestrator.raise_dispute(job.id, raised_by=CUSTOMER, reason="No show")
        with pytest.raises(InvalidStateTransitionError):
            await orchestrator.submit_work(job.id, provider_id=PROVIDER)


class TestCancel:
    @pytest.mark.asyncio
    async def test_customer_cancels_open_job(
        self, orchestrator: EscrowOrchestrator, marketplace: MarketplaceService
    ) -> None:
        job, _ = await post_job_with_quote(marketplace)
        job = await orchestrator.cancel_job(job.id, requested_by=CUSTOMER)
        assert job.status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_only_customer_cancels(
        self, orchestrator: EscrowOrchestrator, marketplace: MarketplaceService
    ) -> None:
        job, _ = await post_job_with_quote(marketplace)
        with pytest.raises(NotAuthorizedError):
            await orchestrator.cancel_job(job.id, requested_by=PROVIDER)

    @pytest.mark.asyncio
    async def test_pending_hold_blocks_cancel(
        self,
        orchestrator: EscrowOrchestrator,
        marketplace: MarketplaceService,
        gateway: MockGateway,
    ) -> None:
        gateway.auto_confirm = False
        job, proposal = await post_job_with_quote(marketplace)
        await orchestrator.accept_proposal(proposal.id, payer_id=CUSTOMER)
        with pytest.raises(ActiveHoldExistsError):
            await orchestrator.cancel_job(job.id, requested_by=CUSTOMER)


class TestReads:
    @pytest.mark.asyncio
    async def test_escrow_summary(
        self, orchestrator: EscrowOrchestrator, marketplace: MarketplaceService
    ) -> None:
        job = await held_job(marketplace, orchestrator, price=42_000)
        summary = await orchestrator.get_escrow_summary(job.id)

        assert summary["job_status"] == JobStatus.IN_PROGRESS
        assert set(summary["allowed_job_events"]) == {
            "work_submitted",
            "dispute_raised",
            "admin_release",
            "refund_issued",
        }
        assert summary["payment"]["status"] == PaymentStatus.HELD_IN_ESCROW
        assert summary["payment"]["amount"] == 42_000
        assert summary["payment"]["pending_action"] is None

    @pytest.mark.asyncio
    async def test_summary_without_payment(
        self, orchestrator: EscrowOrchestrator, marketplace: MarketplaceService
    ) -> None:
        job, _ = await post_job_with_quote(marketplace)
        summary = await orchestrator.get_escrow_summary(job.id)
        assert summary["payment"] is None

    @pytest.mark.asyncio
    async def test_unknown_job(self, orchestrator: EscrowOrchestrator, sample_job_id) -> None:
        with pytest.raises(JobNotFoundError):
            await orchestrator.get_events(sample_job_id)
