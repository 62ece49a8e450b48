"""Job REST API routes.

Routes:
    POST   /api/v1/jobs                 : Post a new job
    GET    /api/v1/jobs/{id}            : Get job details
    POST   /api/v1/jobs/{id}/proposals  : Provider submits a quote
    GET    /api/v1/jobs/{id}/proposals  : List quotes for a job
    POST   /api/v1/jobs/{id}/submit     : Provider marks work complete
    POST   /api/v1/jobs/{id}/dispute    : Customer or provider raises a dispute
    POST   /api/v1/jobs/{id}/cancel     : Customer withdraws an open job
    POST   /api/v1/jobs/{id}/release    : Release held funds to the provider
    POST   /api/v1/jobs/{id}/refund     : Return held funds to the customer
    POST   /api/v1/jobs/{id}/abandon-hold : Void a hold the customer never confirmed
    GET    /api/v1/jobs/{id}/escrow     : Escrow status summary
    GET    /api/v1/jobs/{id}/events     : Audit trail
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends

from tradie_escrow.api.deps import get_marketplace, get_orchestrator
from tradie_escrow.logging_config import get_logger
from tradie_escrow.schemas.escrow import (
    AbandonHoldRequest,
    CancelJobRequest,
    CreateJobRequest,
    EscrowEventResponse,
    EscrowSummaryResponse,
    JobResponse,
    ProposalResponse,
    RaiseDisputeRequest,
    RefundRequest,
    ReleaseRequest,
    SettlementResponse,
    SubmitProposalRequest,
    SubmitWorkRequest,
)
from tradie_escrow.services import EscrowOrchestrator, MarketplaceService

router = APIRouter(prefix="/api/v1/jobs", tags=["Jobs"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------


@router.post("", response_model=JobResponse, status_code=201, summary="Post a new job")
async def create_job(
    request: CreateJobRequest,
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> JobResponse:
    job = await marketplace.create_job(
        customer_id=request.customer_id,
        title=request.title,
        budget_min=request.budget_min,
        budget_max=request.budget_max,
    )
    return JobResponse.model_validate(job)


@router.get("/{job_id}", response_model=JobResponse, summary="Get job details")
async def get_job(
    job_id: uuid.UUID,
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> JobResponse:
    return JobResponse.model_validate(await marketplace.get_job(job_id))


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------


@router.post(
    "/{job_id}/proposals",
    response_model=ProposalResponse,
    status_code=201,
    summary="Submit a quote",
)
async def submit_proposal(
    job_id: uuid.UUID,
    request: SubmitProposalRequest,
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> ProposalResponse:
    """Provider quotes on an open job; the customer is notified."""
    proposal = await marketplace.submit_proposal(
        job_id=job_id,
        provider_id=request.provider_id,
        price=request.price,
        message=request.message,
    )
    return ProposalResponse.model_validate(proposal)


@router.get(
    "/{job_id}/proposals",
    response_model=list[ProposalResponse],
    summary="List quotes for a job",
)
async def list_proposals(
    job_id: uuid.UUID,
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> list[ProposalResponse]:
    proposals = await marketplace.list_proposals(job_id)
    return [ProposalResponse.model_validate(p) for p in proposals]


# ---------------------------------------------------------------------------
# Job transitions
# ---------------------------------------------------------------------------


@router.post("/{job_id}/submit", response_model=JobResponse, summary="Mark work complete")
async def submit_work(
    job_id: uuid.UUID,
    request: SubmitWorkRequest,
    orchestrator: EscrowOrchestrator = Depends(get_orchestrator),
) -> JobResponse:
    """Transitions IN_PROGRESS -> REVIEW_PENDING."""
    job = await orchestrator.submit_work(job_id, provider_id=request.provider_id)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/dispute", response_model=JobResponse, summary="Raise a dispute")
async def raise_dispute(
    job_id: uuid.UUID,
    request: RaiseDisputeRequest,
    orchestrator: EscrowOrchestrator = Depends(get_orchestrator),
) -> JobResponse:
    """Valid from IN_PROGRESS or REVIEW_PENDING."""
    job = await orchestrator.raise_dispute(
        job_id, raised_by=request.raised_by, reason=request.reason
    )
    return JobResponse.model_validate(job)


@router.post("/{job_id}/cancel", response_model=JobResponse, summary="Cancel an open job")
async def cancel_job(
    job_id: uuid.UUID,
    request: CancelJobRequest,
    orchestrator: EscrowOrchestrator = Depends(get_orchestrator),
) -> JobResponse:
    job = await orchestrator.cancel_job(job_id, requested_by=request.requested_by)
    return JobResponse.model_validate(job)


# ---------------------------------------------------------------------------
# Escrow settlement
# ---------------------------------------------------------------------------


@router.post(
    "/{job_id}/release",
    response_model=SettlementResponse,
    summary="Release held funds to the provider",
)
async def release_funds(
    job_id: uuid.UUID,
    request: ReleaseRequest,
    orchestrator: EscrowOrchestrator = Depends(get_orchestrator),
) -> SettlementResponse:
    """Captures the hold; the job is completed only if the capture succeeded."""
    outcome = await orchestrator.release(
        job_id, requested_by=request.requested_by, admin_override=request.admin_override
    )
    return SettlementResponse.model_validate(outcome)


@router.post(
    "/{job_id}/refund",
    response_model=SettlementResponse,
    summary="Return held funds to the customer",
)
async def refund_funds(
    job_id: uuid.UUID,
    request: RefundRequest,
    orchestrator: EscrowOrchestrator = Depends(get_orchestrator),
) -> SettlementResponse:
    outcome = await orchestrator.refund(
        job_id,
        reason=request.reason,
        requested_by=request.requested_by,
        admin_override=request.admin_override,
    )
    return SettlementResponse.model_validate(outcome)


@router.post(
    "/{job_id}/abandon-hold",
    response_model=SettlementResponse,
    summary="Void a hold the customer never confirmed",
)
async def abandon_hold(
    job_id: uuid.UUID,
    request: AbandonHoldRequest,
    orchestrator: EscrowOrchestrator = Depends(get_orchestrator),
) -> SettlementResponse:
    """Frees the job so it can be cancelled or take another quote."""
    outcome = await orchestrator.abandon_hold(
        job_id, requested_by=request.requested_by, admin_override=request.admin_override
    )
    return SettlementResponse.model_validate(outcome)


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/{job_id}/escrow",
    response_model=EscrowSummaryResponse,
    summary="Escrow status summary",
)
async def get_escrow_summary(
    job_id: uuid.UUID,
    orchestrator: EscrowOrchestrator = Depends(get_orchestrator),
) -> EscrowSummaryResponse:
    return EscrowSummaryResponse.model_validate(await orchestrator.get_escrow_summary(job_id))


@router.get(
    "/{job_id}/events",
    response_model=list[EscrowEventResponse],
    summary="Get audit trail",
)
async def get_events(
    job_id: uuid.UUID,
    orchestrator: EscrowOrchestrator = Depends(get_orchestrator),
) -> list[EscrowEventResponse]:
    """Chronological audit trail of every applied transition."""
    events = await orchestrator.get_events(job_id)
    return [EscrowEventResponse.model_validate(e) for e in events]
