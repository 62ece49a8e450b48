"""Pydantic schemas for the escrow API.

These schemas define the request/response shapes for the REST API. They
are separate from the domain records and ORM rows so the wire format can
change without touching either.

Authentication is handled upstream; requests name the acting party
(``customer_id``, ``provider_id``, ``requested_by``) and the orchestrator
checks that party against the job.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateJobRequest(BaseModel):
    """Request body for posting a new job."""

    customer_id: str = Field(..., min_length=1, max_length=64)
    title: str = Field(
        ...,
        min_length=3,
        max_length=500,
        examples=["Replace hot water system"],
    )
    budget_min: int | None = Field(
        default=None, ge=0, description="Lower budget bound in minor currency units"
    )
    budget_max: int | None = Field(
        default=None, ge=0, description="Upper budget bound in minor currency units"
    )


class SubmitProposalRequest(BaseModel):
    """Request body for a provider quoting on a job."""

    provider_id: str = Field(..., min_length=1, max_length=64)
    price: int = Field(..., gt=0, description="Quoted price in minor currency units")
    message: str | None = Field(default=None, max_length=5000)


class AcceptProposalRequest(BaseModel):
    """Request body for a customer accepting (and paying for) a quote."""

    payer_id: str = Field(..., min_length=1, max_length=64)


class RejectProposalRequest(BaseModel):
    customer_id: str = Field(..., min_length=1, max_length=64)


class SubmitWorkRequest(BaseModel):
    provider_id: str = Field(..., min_length=1, max_length=64)


class RaiseDisputeRequest(BaseModel):
    """Request body for raising a dispute against a job."""

    raised_by: str = Field(..., min_length=1, max_length=64)
    reason: str = Field(
        ...,
        min_length=3,
        max_length=2000,
        description="Why the job is disputed",
    )


class CancelJobRequest(BaseModel):
    requested_by: str = Field(..., min_length=1, max_length=64)


class ReleaseRequest(BaseModel):
    """Request body for releasing held funds to the provider."""

    requested_by: str = Field(..., min_length=1, max_length=64)
    admin_override: bool = Field(
        default=False,
        description="Administrative release (allowed before work is submitted)",
    )


class RefundRequest(BaseModel):
    """Request body for returning held funds to the customer."""

    requested_by: str = Field(..., min_length=1, max_length=64)
    reason: str = Field(..., min_length=3, max_length=2000)
    admin_override: bool = False


class AbandonHoldRequest(BaseModel):
    """Request body for voiding a hold the customer never confirmed."""

    requested_by: str = Field(..., min_length=1, max_length=64)
    admin_override: bool = False


class PayoutAccountRequest(BaseModel):
    account_id: str = Field(
        ..., min_length=1, max_length=255, description="Connected account id at the processor"
    )


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class JobResponse(BaseModel):
    """Response schema for a job."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    customer_id: str
    title: str
    status: str
    assigned_provider_id: str | None
    payment_reference: str | None
    budget_min: int | None
    budget_max: int | None
    created_at: datetime
    updated_at: datetime


class ProposalResponse(BaseModel):
    """Response schema for a quote."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_id: uuid.UUID
    provider_id: str
    price: int
    status: str
    message: str | None
    created_at: datetime


class HoldResponse(BaseModel):
    """Result of accepting a quote.

    ``client_token`` is handed to the payment UI when the hold still needs
    the customer to confirm it; ``payment_status`` is then ``pending``.
    """

    model_config = ConfigDict(from_attributes=True)

    payment_id: uuid.UUID
    client_token: str | None
    payment_status: str
    job_status: str


class SettlementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: uuid.UUID
    payment_status: str
    job_status: str


class PaymentSummary(BaseModel):
    payment_id: uuid.UUID
    status: str
    amount: int
    currency: str
    gateway_reference: str | None
    pending_action: str | None
    applied_events: int
    allowed_events: list[str] = Field(
        description="State machine events that can fire from the current status"
    )


class PayoutAccountResponse(BaseModel):
    provider_id: str
    account_id: str


class EscrowSummaryResponse(BaseModel):
    """Lightweight escrow status check."""

    job_id: uuid.UUID
    job_status: str
    allowed_job_events: list[str]
    assigned_provider_id: str | None
    payment: PaymentSummary | None


class EscrowEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_id: uuid.UUID
    payment_id: uuid.UUID | None
    event_type: str
    old_status: str | None
    new_status: str
    actor: str
    metadata: dict | None = None
    created_at: datetime


class WebhookAck(BaseModel):
    """Acknowledgment returned to the payment gateway."""

    received: bool = True
    outcome: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
    gateway: str = "unknown"
