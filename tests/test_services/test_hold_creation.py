"""Tests for accepting a quote and creating the escrow hold."""

from __future__ import annotations

import asyncio

import pytest
from conftest import CUSTOMER, OTHER_PROVIDER, PROVIDER, Stores, post_job_with_quote

from tradie_escrow.domain.enums import (
    EventType,
    JobStatus,
    NotificationKind,
    PaymentStatus,
    ProposalStatus,
)
from tradie_escrow.domain.exceptions import (
    PAYMENT_NOT_STARTED,
    ActiveHoldExistsError,
    GatewayError,
    GatewayTimeoutError,
    InvalidAmountError,
    InvalidStateTransitionError,
    NotAuthorizedError,
    StateConflictError,
    ValidationError,
)
from tradie_escrow.gateways.mock import MockGateway
from tradie_escrow.services.escrow_orchestrator import EscrowOrchestrator
from tradie_escrow.services.marketplace_service import MarketplaceService


async def queued_kinds(stores: Stores) -> list[NotificationKind]:
    kinds = []
    while (record := await stores.outbox.consume(timeout=0.01)) is not None:
        kinds.append(record.kind)
    return kinds


class TestConfirmedHold:
    @pytest.mark.asyncio
    async def test_accept_holds_funds_and_starts_job(
        self,
        orchestrator: EscrowOrchestrator,
        marketplace: MarketplaceService,
        stores: Stores,
    ) -> None:
        job, proposal = await post_job_with_quote(marketplace, price=25_000)

        outcome = await orchestrator.accept_proposal(proposal.id, payer_id=CUSTOMER)

        assert outcome.payment_status == PaymentStatus.HELD_IN_ESCROW
        assert outcome.job_status == JobStatus.IN_PROGRESS
        assert outcome.client_token is not None

        payment = await stores.payments.get_payment(outcome.payment_id)
        assert payment.amount == 25_000
        assert payment.currency == "aud"
        assert payment.gateway_reference == "pi_mock_1"

        job = await stores.jobs.get_job(job.id)
        assert job.assigned_provider_id == PROVIDER
        assert job.payment_reference == payment.gateway_reference
        assert (await stores.proposals.get_proposal(proposal.id)).status == ProposalStatus.ACCEPTED
        assert NotificationKind.PAYMENT_HELD in await queued_kinds(stores)

    @pytest.mark.asyncio
    async def test_audit_trail(
        self,
        orchestrator: EscrowOrchestrator,
        marketplace: MarketplaceService,
    ) -> None:
        job, proposal = await post_job_with_quote(marketplace)
        await orchestrator.accept_proposal(proposal.id, payer_id=CUSTOMER)

        types = [e.event_type for e in await orchestrator.get_events(job.id)]
        assert types == [
            EventType.JOB_CREATED,
            EventType.PROPOSAL_SUBMITTED,
            EventType.HOLD_REQUESTED,
            EventType.HOLD_CONFIRMED,
            EventType.PROPOSAL_ACCEPTED,
            EventType.JOB_STARTED,
        ]


class TestUnconfirmedHold:
    @pytest.mark.asyncio
    async def test_hold_stays_pending_until_webhook(
        self,
        orchestrator: EscrowOrchestrator,
        marketplace: MarketplaceService,
        gateway: MockGateway,
        stores: Stores,
    ) -> None:
        gateway.auto_confirm = False
        job, proposal = await post_job_with_quote(marketplace)

        outcome = await orchestrator.accept_proposal(proposal.id, payer_id=CUSTOMER)

        assert outcome.payment_status == PaymentStatus.PENDING
        assert outcome.job_status == JobStatus.OPEN
        assert outcome.client_token == "pi_mock_1_secret_000001"
        payment = await stores.payments.get_payment(outcome.payment_id)
        assert payment.gateway_reference == "pi_mock_1"
        assert (await stores.proposals.get_proposal(proposal.id)).status == ProposalStatus.PENDING


class TestRejectedBeforeGateway:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -100, True, 10.5])
    async def test_invalid_amount(
        self,
        orchestrator: EscrowOrchestrator,
        marketplace: MarketplaceService,
        gateway: MockGateway,
        amount: object,
    ) -> None:
        job, proposal = await post_job_with_quote(marketplace)
        with pytest.raises(InvalidAmountError):
            await orchestrator.create_hold(job.id, amount, CUSTOMER, PROVIDER, proposal.id)
        assert gateway.call_count("create_hold") == 0

    @pytest.mark.asyncio
    async def test_payer_must_be_customer(
        self, orchestrator: EscrowOrchestrator, marketplace: MarketplaceService
    ) -> None:
        _, proposal = await post_job_with_quote(marketplace)
        with pytest.raises(NotAuthorizedError):
            await orchestrator.accept_proposal(proposal.id, payer_id="cust_mallory")

    @pytest.mark.asyncio
    async def test_amount_must_match_quote(
        self, orchestrator: EscrowOrchestrator, marketplace: MarketplaceService
    ) -> None:
        job, proposal = await post_job_with_quote(marketplace, price=25_000)
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.create_hold(job.id, 20_000, CUSTOMER, PROVIDER, proposal.id)
        assert exc_info.value.code == "AMOUNT_MISMATCH"

    @pytest.mark.asyncio
    async def test_payee_must_match_quote(
        self, orchestrator: EscrowOrchestrator, marketplace: MarketplaceService
    ) -> None:
        job, proposal = await post_job_with_quote(marketplace, price=25_000)
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.create_hold(job.id, 25_000, CUSTOMER, OTHER_PROVIDER, proposal.id)
        assert exc_info.value.code == "PROPOSAL_MISMATCH"

    @pytest.mark.asyncio
    async def test_rejected_quote_cannot_be_paid(
        self, orchestrator: EscrowOrchestrator, marketplace: MarketplaceService
    ) -> None:
        _, proposal = await post_job_with_quote(marketplace)
        await marketplace.reject_proposal(proposal.id, customer_id=CUSTOMER)
        with pytest.raises(StateConflictError):
            await orchestrator.accept_proposal(proposal.id, payer_id=CUSTOMER)

    @pytest.mark.asyncio
    async def test_job_must_be_open(
        self, orchestrator: EscrowOrchestrator, marketplace: MarketplaceService
    ) -> None:
        job, proposal = await post_job_with_quote(marketplace)
        await orchestrator.cancel_job(job.id, requested_by=CUSTOMER)
        with pytest.raises(InvalidStateTransitionError):
            await orchestrator.accept_proposal(proposal.id, payer_id=CUSTOMER)


class TestGatewayFailures:
    @pytest.mark.asyncio
    async def test_declined_hold_marks_payment_failed(
        self,
        orchestrator: EscrowOrchestrator,
        marketplace: MarketplaceService,
        gateway: MockGateway,
        stores: Stores,
    ) -> None:
        job, proposal = await post_job_with_quote(marketplace)
        gateway.fail_next("create_hold")

        with pytest.raises(GatewayError) as exc_info:
            await orchestrator.accept_proposal(proposal.id, payer_id=CUSTOMER)
        assert exc_info.value.user_message == PAYMENT_NOT_STARTED

        payments = await stores.payments.list_for_job(job.id)
        assert [p.status for p in payments] == [PaymentStatus.FAILED]
        assert (await stores.jobs.get_job(job.id)).status == JobStatus.OPEN

        # The customer can try again once the failed hold is terminal.
        outcome = await orchestrator.accept_proposal(proposal.id, payer_id=CUSTOMER)
        assert outcome.payment_status == PaymentStatus.HELD_IN_ESCROW

    @pytest.mark.asyncio
    async def test_timeout_leaves_pending_record(
        self,
        marketplace: MarketplaceService,
        gateway: MockGateway,
        stores: Stores,
    ) -> None:
        orchestrator = EscrowOrchestrator(
            stores.jobs,
            stores.proposals,
            stores.payments,
            stores.events,
            gateway,
            stores.outbox,
            gateway_timeout=0.05,
        )
        gateway.latency["create_hold"] = 0.5
        job, proposal = await post_job_with_quote(marketplace)

        with pytest.raises(GatewayTimeoutError):
            await orchestrator.accept_proposal(proposal.id, payer_id=CUSTOMER)

        payment = await stores.payments.get_active_payment(job.id)
        assert payment.status == PaymentStatus.PENDING
        assert (await stores.jobs.get_job(job.id)).status == JobStatus.OPEN

        # The unresolved hold still blocks a second one.
        gateway.latency.clear()
        with pytest.raises(ActiveHoldExistsError):
            await orchestrator.accept_proposal(proposal.id, payer_id=CUSTOMER)


class TestConcurrentAccepts:
    @pytest.mark.asyncio
    async def test_only_one_hold_reaches_the_gateway(
        self,
        orchestrator: EscrowOrchestrator,
        marketplace: MarketplaceService,
        gateway: MockGateway,
        stores: Stores,
    ) -> None:
        job, first = await post_job_with_quote(marketplace, price=25_000)
        second = await marketplace.submit_proposal(job.id, OTHER_PROVIDER, 23_000)

        results = await asyncio.gather(
            orchestrator.accept_proposal(first.id, payer_id=CUSTOMER),
            orchestrator.accept_proposal(second.id, payer_id=CUSTOMER),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], ActiveHoldExistsError)
        assert gateway.call_count("create_hold") == 1

        job = await stores.jobs.get_job(job.id)
        assert job.status == JobStatus.IN_PROGRESS
        accepted = [
            p for p in await stores.proposals.list_for_job(job.id)
            if p.status == ProposalStatus.ACCEPTED
        ]
        assert len(accepted) == 1
        assert job.assigned_provider_id == accepted[0].provider_id

    @pytest.mark.asyncio
    async def test_same_quote_accepted_twice(
        self,
        orchestrator: EscrowOrchestrator,
        marketplace: MarketplaceService,
        gateway: MockGateway,
    ) -> None:
        _, proposal = await post_job_with_quote(marketplace)

        results = await asyncio.gather(
            orchestrator.accept_proposal(proposal.id, payer_id=CUSTOMER),
            orchestrator.accept_proposal(proposal.id, payer_id=CUSTOMER),
            return_exceptions=True,
        )

        assert sum(not isinstance(r, Exception) for r in results) == 1
        assert gateway.call_count("create_hold") == 1


class TestPayoutAccounts:
    @pytest.mark.asyncio
    async def test_missing_account_rejected_before_any_record(
        self,
        orchestrator: EscrowOrchestrator,
        marketplace: MarketplaceService,
        gateway: MockGateway,
        stores: Stores,
    ) -> None:
        gateway.requires_payout_account = True
        job, proposal = await post_job_with_quote(marketplace)

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.accept_proposal(proposal.id, payer_id=CUSTOMER)

        assert exc_info.value.code == "PAYOUT_ACCOUNT_MISSING"
        assert await stores.payments.list_for_job(job.id) == []
        assert gateway.call_count("create_hold") == 0

    @pytest.mark.asyncio
    async def test_registered_account_goes_to_the_gateway(
        self,
        orchestrator: EscrowOrchestrator,
        marketplace: MarketplaceService,
        gateway: MockGateway,
    ) -> None:
        gateway.requires_payout_account = True
        await marketplace.register_payout_account(PROVIDER, "acct_bob_123")
        _, proposal = await post_job_with_quote(marketplace)

        outcome = await orchestrator.accept_proposal(proposal.id, payer_id=CUSTOMER)

        assert outcome.payment_status == PaymentStatus.HELD_IN_ESCROW
        metadata = gateway.intents["pi_mock_1"].metadata
        assert metadata["payee_account"] == "acct_bob_123"
        assert metadata["payee_id"] == PROVIDER

    @pytest.mark.asyncio
    async def test_account_optional_without_destination_charges(
        self,
        orchestrator: EscrowOrchestrator,
        marketplace: MarketplaceService,
        gateway: MockGateway,
    ) -> None:
        _, proposal = await post_job_with_quote(marketplace)
        await orchestrator.accept_proposal(proposal.id, payer_id=CUSTOMER)
        assert "payee_account" not in gateway.intents["pi_mock_1"].metadata

    @pytest.mark.asyncio
    async def test_blank_account_id_rejected(self, marketplace: MarketplaceService) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await marketplace.register_payout_account(PROVIDER, "  ")
        assert exc_info.value.code == "INVALID_PAYOUT_ACCOUNT"
        assert await marketplace.get_payout_account(PROVIDER) is None
