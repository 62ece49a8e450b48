"""Webhook signature scheme and event envelope parsing.

Signatures follow the processor's header format::

    stripe-signature: t=1700000000,v1=<hex hmac-sha256 of "1700000000.<payload>">

The mock gateway signs and verifies with these helpers; the Stripe gateway
verifies with the SDK and shares only ``parse_event``.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time

from tradie_escrow.domain.exceptions import EventVerificationError
from tradie_escrow.domain.models import GatewayEvent

SIGNATURE_SCHEME = "v1"


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def sign_payload(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build the signature header value for ``payload``."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},{SIGNATURE_SCHEME}={compute_signature(payload, secret, ts)}"


def _parse_header(header: str) -> tuple[int, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as exc:
                raise EventVerificationError("malformed signature timestamp") from exc
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)
    if timestamp is None or not signatures:
        raise EventVerificationError("malformed signature header")
    return timestamp, signatures


def verify_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    tolerance: int = 300,
    now: float | None = None,
) -> None:
    """Raise EventVerificationError unless ``header`` signs ``payload``."""
    if not header:
        raise EventVerificationError("missing signature header")
    timestamp, signatures = _parse_header(header)

    expected = compute_signature(payload, secret, timestamp)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise EventVerificationError("signature mismatch")

    current = time.time() if now is None else now
    if tolerance > 0 and abs(current - timestamp) > tolerance:
        raise EventVerificationError("timestamp outside tolerance window")


def parse_event(payload: bytes) -> GatewayEvent:
    """Parse a verified payload into a GatewayEvent.

    Expects the processor's envelope: ``{"id", "type", "data": {"object": {...}}}``.
    """
    try:
        body = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise EventVerificationError("payload is not valid JSON") from exc

    if not isinstance(body, dict):
        raise EventVerificationError("payload is not an object")

    event_id = body.get("id")
    event_type = body.get("type")
    data = body.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(event_id, str) or not event_id:
        raise EventVerificationError("event id missing")
    if not isinstance(event_type, str) or not event_type:
        raise EventVerificationError("event type missing")
    if not isinstance(obj, dict):
        raise EventVerificationError("event data.object missing")

    return GatewayEvent(event_id=event_id, type=event_type, data=obj)
