"""Collaborator Protocols.

The orchestrator depends only on these shapes. Concrete implementations:
    - infrastructure/database/repositories.py  (SQLAlchemy, one transaction per call)
    - infrastructure/memory.py                 (in-process, tests and simulation)
    - gateways/mock.py, gateways/stripe_gateway.py
    - infrastructure/memory.py InMemoryOutbox, infrastructure/redis_client.py RedisOutbox

Every status write is conditional: it names the status (and for payments
the version) it expects to replace and raises StateConflictError when the
stored record has moved on.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    import uuid

    from tradie_escrow.domain.enums import (
        JobStatus,
        NotificationKind,
        PaymentStatus,
        ProposalStatus,
    )
    from tradie_escrow.domain.models import (
        AuditEvent,
        EscrowPayment,
        GatewayEvent,
        HoldResult,
        Job,
        Proposal,
        TransitionRecord,
    )


class JobStore(Protocol):
    async def insert_job(self, job: Job) -> Job: ...

    async def get_job(self, job_id: uuid.UUID) -> Job | None: ...

    async def update_job_status(
        self,
        job_id: uuid.UUID,
        expected_status: JobStatus,
        new_status: JobStatus,
        **fields: Any,
    ) -> Job:
        """Compare-and-swap the status; raises StateConflictError or JobNotFoundError."""
        ...


class ProposalStore(Protocol):
    async def insert_proposal(self, proposal: Proposal) -> Proposal: ...

    async def get_proposal(self, proposal_id: uuid.UUID) -> Proposal | None: ...

    async def list_for_job(self, job_id: uuid.UUID) -> list[Proposal]: ...

    async def update_proposal_status(
        self,
        proposal_id: uuid.UUID,
        expected_status: ProposalStatus,
        new_status: ProposalStatus,
    ) -> Proposal:
        """Compare-and-swap; accepting a second proposal for one job conflicts."""
        ...


class PaymentStore(Protocol):
    async def insert_payment(self, payment: EscrowPayment) -> EscrowPayment:
        """Insert a pending record; raises ActiveHoldExistsError if the job
        already has a non-terminal record."""
        ...

    async def get_payment(self, payment_id: uuid.UUID) -> EscrowPayment | None: ...

    async def get_active_payment(self, job_id: uuid.UUID) -> EscrowPayment | None: ...

    async def get_by_gateway_reference(self, reference: str) -> EscrowPayment | None: ...

    async def list_for_job(self, job_id: uuid.UUID) -> list[EscrowPayment]: ...

    async def update_payment_status(
        self,
        payment_id: uuid.UUID,
        expected_status: PaymentStatus,
        new_status: PaymentStatus,
        *,
        expected_version: int | None = None,
        **fields: Any,
    ) -> EscrowPayment:
        """Compare-and-swap on status (and version when given); bumps version."""
        ...


class ProviderAccountStore(Protocol):
    """Maps a provider to the processor account their payouts land in."""

    async def get_payout_account(self, provider_id: str) -> str | None: ...

    async def set_payout_account(self, provider_id: str, account_id: str) -> None: ...


class EventLog(Protocol):
    async def record(self, event: AuditEvent) -> AuditEvent: ...

    async def get_by_job(self, job_id: uuid.UUID) -> list[AuditEvent]: ...


@runtime_checkable
class PaymentGateway(Protocol):
    """The only component that speaks the payment processor's protocol.

    Implementations raise GatewayError on definite failure. Timeouts are
    imposed by the caller. When ``requires_payout_account`` is set, hold
    metadata must carry the provider's ``payee_account``.
    """

    requires_payout_account: bool

    async def create_hold(
        self, amount: int, currency: str, metadata: dict[str, str]
    ) -> HoldResult: ...

    def verify_and_parse_event(
        self, payload: bytes, signature_header: str | None
    ) -> GatewayEvent:
        """Raises EventVerificationError for unsigned, forged or malformed payloads."""
        ...

    async def capture_or_transfer(self, gateway_reference: str) -> None: ...

    async def refund(self, gateway_reference: str) -> None: ...


class TransitionOutbox(Protocol):
    async def publish(self, record: TransitionRecord) -> None: ...

    async def consume(self, timeout: float = 1.0) -> TransitionRecord | None: ...


class Notifier(Protocol):
    async def notify(
        self, kind: NotificationKind, job_id: uuid.UUID, payload: dict[str, Any]
    ) -> None: ...
