"""Provider REST API routes.

Routes:
    PUT    /api/v1/providers/{id}/payout-account: Register the connected account payouts land in
    GET    /api/v1/providers/{id}/payout-account: Show the registered account
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from tradie_escrow.api.deps import get_marketplace
from tradie_escrow.domain.exceptions import PayoutAccountNotFoundError
from tradie_escrow.schemas.escrow import PayoutAccountRequest, PayoutAccountResponse
from tradie_escrow.services import MarketplaceService

router = APIRouter(prefix="/api/v1/providers", tags=["Providers"])


@router.put(
    "/{provider_id}/payout-account",
    response_model=PayoutAccountResponse,
    summary="Register a provider's payout account",
)
async def register_payout_account(
    provider_id: str,
    request: PayoutAccountRequest,
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> PayoutAccountResponse:
    account_id = await marketplace.register_payout_account(provider_id, request.account_id)
    return PayoutAccountResponse(provider_id=provider_id, account_id=account_id)


@router.get(
    "/{provider_id}/payout-account",
    response_model=PayoutAccountResponse,
    summary="Get a provider's payout account",
)
async def get_payout_account(
    provider_id: str,
    marketplace: MarketplaceService = Depends(get_marketplace),
) -> PayoutAccountResponse:
    account_id = await marketplace.get_payout_account(provider_id)
    if account_id is None:
        raise PayoutAccountNotFoundError(provider_id)
    return PayoutAccountResponse(provider_id=provider_id, account_id=account_id)
