"""Payment gateway adapters.

The factory pattern selects the implementation from ``GATEWAY_MODE`` at
startup; the orchestrator only sees the PaymentGateway protocol.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from tradie_escrow.gateways.mock import MockGateway
from tradie_escrow.gateways.stripe_gateway import StripeGateway
from tradie_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from tradie_escrow.config import Settings
    from tradie_escrow.domain.ports import PaymentGateway

logger = get_logger(__name__)

__all__ = ["MockGateway", "StripeGateway", "create_gateway"]


def create_gateway(settings: Settings) -> PaymentGateway:
    """Build the gateway named by ``settings.gateway_mode``.

    Raises:
        ValueError: If the mode is unknown or Stripe is selected without a key.
    """
    if settings.gateway_mode == "mock":
        gateway: PaymentGateway = MockGateway(
            webhook_secret=settings.stripe_webhook_secret,
            tolerance=settings.webhook_tolerance_seconds,
        )
    elif settings.gateway_mode == "stripe":
        gateway = StripeGateway(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            api_version=settings.stripe_api_version,
            tolerance=settings.webhook_tolerance_seconds,
            destination_charges=settings.stripe_connect_destination_charges,
            platform_fee_percent=settings.platform_fee_percent,
            request_timeout=settings.gateway_timeout_seconds,
        )
    else:
        raise ValueError(f"Unknown gateway mode '{settings.gateway_mode}'")

    logger.info("gateway.selected", mode=settings.gateway_mode)
    return gateway
