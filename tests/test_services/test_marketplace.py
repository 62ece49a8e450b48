"""Tests for job listings and provider quotes."""

from __future__ import annotations

import pytest
from conftest import CUSTOMER, OTHER_PROVIDER, PROVIDER, Stores, held_job, post_job_with_quote

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
    StateConflictError,
    ValidationError,
)
from tradie_escrow.services.escrow_orchestrator import EscrowOrchestrator
from tradie_escrow.services.marketplace_service import MarketplaceService


class TestCreateJob:
    @pytest.mark.asyncio
    async def test_create_open_job(
        self, marketplace: MarketplaceService, stores: Stores
    ) -> None:
        job = await marketplace.create_job(CUSTOMER, "  Fix roof  ", budget_min=100, budget_max=900)

        assert job.status == JobStatus.OPEN
        assert job.title == "Fix roof"
        events = await stores.events.get_by_job(job.id)
        assert [e.event_type for e in events] == [EventType.JOB_CREATED]

    @pytest.mark.asyncio
    async def test_blank_title(self, marketplace: MarketplaceService) -> None:
        with pytest.raises(ValidationError):
            await marketplace.create_job(CUSTOMER, "   ")

    @pytest.mark.asyncio
    async def test_negative_budget(self, marketplace: MarketplaceService) -> None:
        with pytest.raises(InvalidAmountError):
            await marketplace.create_job(CUSTOMER, "Fix roof", budget_min=-1)

    @pytest.mark.asyncio
    async def test_inverted_budget(self, marketplace: MarketplaceService) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await marketplace.create_job(CUSTOMER, "Fix roof", budget_min=900, budget_max=100)
        assert exc_info.value.code == "INVALID_BUDGET"


class TestProposals:
    @pytest.mark.asyncio
    async def test_quote_notifies_customer(
        self, marketplace: MarketplaceService, stores: Stores
    ) -> None:
        job, proposal = await post_job_with_quote(marketplace, price=30_000)

        assert proposal.status == ProposalStatus.PENDING
        record = await stores.outbox.consume(timeout=0.01)
        assert record.kind == NotificationKind.PROPOSAL_RECEIVED
        assert record.payload["customer_id"] == CUSTOMER
        assert record.payload["price"] == 30_000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price", [0, -5, 12.5])
    async def test_invalid_price(self, marketplace: MarketplaceService, price: object) -> None:
        job = await marketplace.create_job(CUSTOMER, "Fix roof")
        with pytest.raises(InvalidAmountError):
            await marketplace.submit_proposal(job.id, PROVIDER, price)

    @pytest.mark.asyncio
    async def test_customer_cannot_quote_own_job(self, marketplace: MarketplaceService) -> None:
        job = await marketplace.create_job(CUSTOMER, "Fix roof")
        with pytest.raises(NotAuthorizedError):
            await marketplace.submit_proposal(job.id, CUSTOMER, 1_000)

    @pytest.mark.asyncio
    async def test_no_quotes_after_assignment(
        self, marketplace: MarketplaceService, orchestrator: EscrowOrchestrator
    ) -> None:
        job = await held_job(marketplace, orchestrator)
        with pytest.raises(InvalidStateTransitionError):
            await marketplace.submit_proposal(job.id, OTHER_PROVIDER, 20_000)

    @pytest.mark.asyncio
    async def test_unknown_job(self, marketplace: MarketplaceService, sample_job_id) -> None:
        with pytest.raises(JobNotFoundError):
            await marketplace.submit_proposal(sample_job_id, PROVIDER, 1_000)

    @pytest.mark.asyncio
    async def test_list_in_submission_order(self, marketplace: MarketplaceService) -> None:
        job, first = await post_job_with_quote(marketplace)
        second = await marketplace.submit_proposal(job.id, OTHER_PROVIDER, 19_000)

        proposals = await marketplace.list_proposals(job.id)
        assert [p.id for p in proposals] == [first.id, second.id]


class TestRejectProposal:
    @pytest.mark.asyncio
    async def test_customer_rejects(self, marketplace: MarketplaceService) -> None:
        _, proposal = await post_job_with_quote(marketplace)
        rejected = await marketplace.reject_proposal(proposal.id, customer_id=CUSTOMER)
        assert rejected.status == ProposalStatus.REJECTED

    @pytest.mark.asyncio
    async def test_provider_cannot_reject(self, marketplace: MarketplaceService) -> None:
        _, proposal = await post_job_with_quote(marketplace)
        with pytest.raises(NotAuthorizedError):
            await marketplace.reject_proposal(proposal.id, customer_id=PROVIDER)

    @pytest.mark.asyncio
    async def test_cannot_reject_twice(self, marketplace: MarketplaceService) -> None:
        _, proposal = await post_job_with_quote(marketplace)
        await marketplace.reject_proposal(proposal.id, customer_id=CUSTOMER)
        with pytest.raises(StateConflictError):
            await marketplace.reject_proposal(proposal.id, customer_id=CUSTOMER)

    @pytest.mark.asyncio
    async def test_unknown_proposal(self, marketplace: MarketplaceService, sample_job_id) -> None:
        with pytest.raises(ProposalNotFoundError):
            await marketplace.reject_proposal(sample_job_id, customer_id=CUSTOMER)
