"""Tests for log processors."""

from __future__ import annotations

from tradie_escrow.logging_config import mask_payment_secrets, mask_secret


class TestMaskPaymentSecrets:
    def test_masks_known_keys(self) -> None:
        event = {
            "event": "escrow.hold_created",
            "client_token": "pi_mock_1_secret_000001",
            "job_id": "j-1",
        }
        masked = mask_payment_secrets(None, "info", event)
        assert masked["client_token"] == "pi_m...0001"
        assert masked["job_id"] == "j-1"

    def test_short_secret_fully_hidden(self) -> None:
        assert mask_secret("abc123") == "******"

    def test_non_string_values_untouched(self) -> None:
        event = {"event": "webhook.rejected", "signature": None}
        assert mask_payment_secrets(None, "warning", event)["signature"] is None
