"""Stripe payment gateway.

Escrow holds are manual-capture PaymentIntents: the card is authorized when
the customer accepts a quote, captured on release, and cancelled on refund
(an uncaptured authorization is voided rather than refunded).

The stripe SDK is synchronous, so each call runs in a worker thread. The
orchestrator bounds every call with ``asyncio.wait_for`` and the SDK HTTP
client is configured with the same timeout.

With destination charges enabled the funds settle into the provider's
connected account, passed in hold metadata as ``payee_account``.
"""

from __future__ import annotations

import asyncio
from typing import Any

import stripe

from tradie_escrow.domain.exceptions import (
    EventVerificationError,
    GatewayError,
    GatewayTimeoutError,
)
from tradie_escrow.domain.models import GatewayEvent, HoldResult
from tradie_escrow.gateways.signing import parse_event
from tradie_escrow.logging_config import get_logger

logger = get_logger(__name__)


class StripeGateway:
    """PaymentGateway backed by the Stripe API."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        api_version: str | None = None,
        tolerance: int = 300,
        destination_charges: bool = False,
        platform_fee_percent: float = 0.10,
        request_timeout: float = 10.0,
    ) -> None:
        if not secret_key:
            raise ValueError("STRIPE_SECRET_KEY is required when GATEWAY_MODE=stripe")
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._api_version = api_version
        self._tolerance = tolerance
        self._destination_charges = destination_charges
        self._platform_fee_percent = platform_fee_percent
        self._request_timeout = request_timeout
        stripe.default_http_client = stripe.RequestsClient(timeout=request_timeout)

    @property
    def requires_payout_account(self) -> bool:
        return self._destination_charges

    def _request_options(self, idempotency_key: str | None = None) -> dict[str, Any]:
        options: dict[str, Any] = {"api_key": self._secret_key}
        if self._api_version:
            options["stripe_version"] = self._api_version
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        return options

    async def _call(self, operation: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except stripe.APIConnectionError as exc:
            # The request may or may not have reached Stripe.
            logger.warning("stripe.connection_error", operation=operation, error=str(exc))
            raise GatewayTimeoutError(operation, self._request_timeout) from exc
        except stripe.StripeError as exc:
            logger.warning(
                "stripe.request_failed",
                operation=operation,
                code=getattr(exc, "code", None),
                error=str(exc),
            )
            raise GatewayError(str(exc), operation=operation) from exc

    async def create_hold(
        self, amount: int, currency: str, metadata: dict[str, str]
    ) -> HoldResult:
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "capture_method": "manual",
            "automatic_payment_methods": {"enabled": True},
            "metadata": metadata,
        }
        if self._destination_charges:
            destination = metadata.get("payee_account")
            if not destination:
                raise GatewayError(
                    f"No connected account for provider {metadata.get('payee_id')}",
                    operation="create_hold",
                )
            params["transfer_data"] = {"destination": destination}
            params["application_fee_amount"] = round(amount * self._platform_fee_percent)

        intent = await self._call(
            "create_hold",
            stripe.PaymentIntent.create,
            **params,
            **self._request_options(f"hold-{metadata.get('payment_id', '')}"),
        )
        logger.info(
            "stripe.hold_created", gateway_reference=intent["id"], status=intent["status"]
        )
        return HoldResult(
            gateway_reference=intent["id"],
            client_token=intent["client_secret"],
            held=intent["status"] == "requires_capture",
        )

    async def capture_or_transfer(self, gateway_reference: str) -> None:
        await self._call(
            "capture",
            stripe.PaymentIntent.capture,
            gateway_reference,
            **self._request_options(f"capture-{gateway_reference}"),
        )

    async def refund(self, gateway_reference: str) -> None:
        await self._call(
            "refund",
            stripe.PaymentIntent.cancel,
            gateway_reference,
            **self._request_options(f"cancel-{gateway_reference}"),
        )

    def verify_and_parse_event(
        self, payload: bytes, signature_header: str | None
    ) -> GatewayEvent:
        if not signature_header:
            raise EventVerificationError("missing signature header")
        try:
            stripe.Webhook.construct_event(
                payload, signature_header, self._webhook_secret, tolerance=self._tolerance
            )
        except stripe.SignatureVerificationError as exc:
            raise EventVerificationError(f"signature verification failed: {exc}") from exc
        except ValueError as exc:
            raise EventVerificationError("payload is not valid JSON") from exc
        return parse_event(payload)
