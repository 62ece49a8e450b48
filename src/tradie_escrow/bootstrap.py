"""Composition root: builds the stores, gateway and outbox named by Settings.

The FastAPI lifespan, the simulation script and the test suite all go
through ``build_container`` so they wire the orchestrator the same way.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tradie_escrow.gateways import create_gateway
from tradie_escrow.infrastructure.memory import (
    InMemoryEventLog,
    InMemoryJobStore,
    InMemoryOutbox,
    InMemoryPaymentStore,
    InMemoryProposalStore,
    InMemoryProviderAccountStore,
)
from tradie_escrow.logging_config import get_logger
from tradie_escrow.services import (
    EscrowOrchestrator,
    HttpNotifier,
    MarketplaceService,
    NotificationDispatcher,
    create_notifier,
)

if TYPE_CHECKING:
    from tradie_escrow.config import Settings
    from tradie_escrow.domain.ports import (
        EventLog,
        JobStore,
        Notifier,
        PaymentGateway,
        PaymentStore,
        ProposalStore,
        ProviderAccountStore,
        TransitionOutbox,
    )

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    """Everything a request handler or background task needs."""

    settings: Settings
    jobs: JobStore
    proposals: ProposalStore
    payments: PaymentStore
    events: EventLog
    payout_accounts: ProviderAccountStore
    gateway: PaymentGateway
    outbox: TransitionOutbox
    notifier: Notifier
    _closers: list = field(default_factory=list, repr=False)

    def orchestrator(self) -> EscrowOrchestrator:
        return EscrowOrchestrator(
            self.jobs,
            self.proposals,
            self.payments,
            self.events,
            self.gateway,
            self.outbox,
            currency=self.settings.currency,
            gateway_timeout=self.settings.gateway_timeout_seconds,
            store_write_attempts=self.settings.store_write_attempts,
            payout_accounts=self.payout_accounts,
        )

    def marketplace(self) -> MarketplaceService:
        return MarketplaceService(
            self.jobs,
            self.proposals,
            self.events,
            self.outbox,
            payout_accounts=self.payout_accounts,
        )

    def dispatcher(self) -> NotificationDispatcher:
        return NotificationDispatcher(self.outbox, self.notifier)

    async def close(self) -> None:
        for closer in reversed(self._closers):
            await closer()
        self._closers.clear()


async def build_container(
    settings: Settings, gateway: PaymentGateway | None = None
) -> ServiceContainer:
    """Wire the configured backends.

    Args:
        settings: Application settings.
        gateway: Override the gateway chosen by ``settings.gateway_mode``.
    """
    closers: list = []

    if settings.store_backend == "memory":
        jobs: JobStore = InMemoryJobStore()
        proposals: ProposalStore = InMemoryProposalStore()
        payments: PaymentStore = InMemoryPaymentStore()
        events: EventLog = InMemoryEventLog()
        payout_accounts: ProviderAccountStore = InMemoryProviderAccountStore()
    else:
        from tradie_escrow.infrastructure.database import (
            SqlEventLog,
            SqlJobStore,
            SqlPaymentStore,
            SqlProposalStore,
            SqlProviderAccountStore,
            close_db,
            get_session_factory,
            init_db,
        )

        await init_db(settings)
        factory = get_session_factory(settings)
        jobs = SqlJobStore(factory)
        proposals = SqlProposalStore(factory)
        payments = SqlPaymentStore(factory)
        events = SqlEventLog(factory)
        payout_accounts = SqlProviderAccountStore(factory)
        closers.append(close_db)

    if settings.outbox_backend == "redis":
        from tradie_escrow.infrastructure.redis_client import (
            RedisOutbox,
            close_redis,
            init_redis,
        )

        client = await init_redis(settings.redis_url)
        outbox: TransitionOutbox = RedisOutbox(client, key=settings.redis_outbox_key)
        closers.append(close_redis)
    else:
        outbox = InMemoryOutbox()

    notifier = create_notifier(settings)
    if isinstance(notifier, HttpNotifier):
        closers.append(notifier.aclose)

    logger.info(
        "container.built",
        store_backend=settings.store_backend,
        outbox_backend=settings.outbox_backend,
        gateway_mode=settings.gateway_mode if gateway is None else type(gateway).__name__,
    )
    return ServiceContainer(
        settings=settings,
        jobs=jobs,
        proposals=proposals,
        payments=payments,
        events=events,
        payout_accounts=payout_accounts,
        gateway=gateway or create_gateway(settings),
        outbox=outbox,
        notifier=notifier,
        _closers=closers,
    )
