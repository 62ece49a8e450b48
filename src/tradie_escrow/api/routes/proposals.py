"""Proposal REST API routes.

Routes:
    POST   /api/v1/proposals/{id}/accept: Customer accepts and pays into escrow
    POST   /api/v1/proposals/{id}/reject: Customer turns a quote down
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends

from tradie_escrow.api.deps import get_marketplace, get_orchestrator
from tradie_escrow.schemas.escrow import (
    AcceptProposalRequest,
    HoldResponse,
    ProposalResponse,
    RejectProposalRequest,
)
from tradie_escrow.services import EscrowOrchestrator, MarketplaceService

router = APIRouter(prefix="/api/v1/proposals", tags=["Proposals"])


@router.post(
    "/{proposal_id}/accept",
    response_model=HoldResponse,
    status_code=201,
    summary="Accept a quote and hold its price in escrow",
)
async def accept_proposal(
    proposal_id: uuid.UUID,
    request: AcceptProposalRequest,
    orchestrator: EscrowOrchestrator = Depends(get_orchestrator),
) -> HoldResponse:
    """Creates the escrow hold.

    When the gateway needs the customer to confirm the payment, the
    response carries a ``client_token`` and ``payment_status`` stays
    ``pending`` until the gateway's webhook confirms the hold.
    """
    outcome = await orchestrator.accept_proposal(proposal_id, payer_id=request.payer_id)
    return HoldResponse.model_validate(outcome)


@router.post(
    "/{proposal_id}/reject",
    response_model=ProposalResponse,
    summary="Reject a quote",
)
async def reject_proposal(
    proposal_id: uuid.UUID,
    request: RejectProposalRequest,
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> ProposalResponse:
    proposal = await marketplace.reject_proposal(proposal_id, customer_id=request.customer_id)
    return ProposalResponse.model_validate(proposal)
