"""Shared test fixtures for the Tradie Escrow test suite.

Provides:
    - Test settings pointing at in-memory stores and the mock gateway
    - In-memory stores, outbox and an orchestrator wired to them
    - Factory helpers for posting a job with a quote
    - Async test support via pytest-asyncio
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

import pytest

from tradie_escrow.config import Settings
from tradie_escrow.domain.models import Job, Proposal
from tradie_escrow.gateways.mock import MockGateway
from tradie_escrow.infrastructure.memory import (
    InMemoryEventLog,
    InMemoryJobStore,
    InMemoryOutbox,
    InMemoryPaymentStore,
    InMemoryProposalStore,
    InMemoryProviderAccountStore,
)
from tradie_escrow.services.escrow_orchestrator import EscrowOrchestrator
from tradie_escrow.services.marketplace_service import MarketplaceService

CUSTOMER = "cust_alice"
PROVIDER = "tradie_bob"
OTHER_PROVIDER = "tradie_carol"
ADMIN = "admin_ops"
WEBHOOK_SECRET = "whsec_test_secret"


@dataclass
class Stores:
    jobs: InMemoryJobStore
    proposals: InMemoryProposalStore
    payments: InMemoryPaymentStore
    events: InMemoryEventLog
    outbox: InMemoryOutbox
    payout_accounts: InMemoryProviderAccountStore


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        app_env="test",
        store_backend="memory",
        outbox_backend="memory",
        gateway_mode="mock",
        stripe_webhook_secret=WEBHOOK_SECRET,
        notifier_webhook_url="",
    )


# ---------------------------------------------------------------------------
# Escrow wiring
# ---------------------------------------------------------------------------


@pytest.fixture
def stores() -> Stores:
    return Stores(
        jobs=InMemoryJobStore(),
        proposals=InMemoryProposalStore(),
        payments=InMemoryPaymentStore(),
        events=InMemoryEventLog(),
        outbox=InMemoryOutbox(),
        payout_accounts=InMemoryProviderAccountStore(),
    )


@pytest.fixture
def gateway() -> MockGateway:
    return MockGateway(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def orchestrator(stores: Stores, gateway: MockGateway) -> EscrowOrchestrator:
    return EscrowOrchestrator(
        stores.jobs,
        stores.proposals,
        stores.payments,
        stores.events,
        gateway,
        stores.outbox,
        currency="aud",
        gateway_timeout=0.5,
        store_write_attempts=3,
        payout_accounts=stores.payout_accounts,
    )


@pytest.fixture
def marketplace(stores: Stores) -> MarketplaceService:
    return MarketplaceService(
        stores.jobs,
        stores.proposals,
        stores.events,
        stores.outbox,
        payout_accounts=stores.payout_accounts,
    )


# ---------------------------------------------------------------------------
# Data factories
# ---------------------------------------------------------------------------


async def post_job_with_quote(
    marketplace: MarketplaceService,
    price: int = 25_000,
    provider_id: str = PROVIDER,
) -> tuple[Job, Proposal]:
    """Post an open job for CUSTOMER and have ``provider_id`` quote on it."""
    job = await marketplace.create_job(CUSTOMER, "Replace hot water system")
    proposal = await marketplace.submit_proposal(job.id, provider_id, price, "Can start Monday")
    return job, proposal


async def held_job(
    marketplace: MarketplaceService,
    orchestrator: EscrowOrchestrator,
    price: int = 25_000,
) -> Job:
    """A job whose quote was accepted and whose hold is confirmed (in_progress)."""
    job, proposal = await post_job_with_quote(marketplace, price)
    await orchestrator.accept_proposal(proposal.id, payer_id=CUSTOMER)
    return job


@pytest.fixture
def sample_job_id() -> uuid.UUID:
    """Return a deterministic UUID for testing."""
    return uuid.UUID("12345678-1234-5678-1234-567812345678")
