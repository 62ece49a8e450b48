"""Inbound payment gateway webhook.

    POST /api/v1/webhooks/gateway

Response codes tell the gateway whether to redeliver:
    200: applied, duplicate, ignored, or rejected as unverifiable (logged);
          redelivering the same bytes would not change anything.
    409: the record changed underneath; redelivery re-evaluates it.
    503: store or gateway failure; redelivery retries.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from tradie_escrow.api.deps import get_app_settings, get_orchestrator
from tradie_escrow.config import Settings
from tradie_escrow.domain.exceptions import EventVerificationError, ExternalDependencyError
from tradie_escrow.logging_config import get_logger
from tradie_escrow.schemas.escrow import WebhookAck
from tradie_escrow.services import EscrowOrchestrator

router = APIRouter(prefix="/api/v1/webhooks", tags=["Webhooks"])
logger = get_logger(__name__)


@router.post("/gateway", response_model=WebhookAck, summary="Payment gateway webhook")
async def gateway_webhook(
    request: Request,
    orchestrator: EscrowOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
) -> WebhookAck | JSONResponse:
    payload = await request.body()
    signature = request.headers.get(settings.webhook_signature_header)

    try:
        outcome = await orchestrator.apply_gateway_event(payload, signature)
    except EventVerificationError:
        # Already logged as webhook.rejected; a retry cannot fix it.
        return WebhookAck(received=False, outcome="rejected")
    except ExternalDependencyError as exc:
        logger.error("webhook.dependency_failed", code=exc.code, error=exc.message)
        return JSONResponse(
            status_code=503,
            content={"error": exc.code, "message": exc.user_message},
        )
    return WebhookAck(received=True, outcome=outcome)
