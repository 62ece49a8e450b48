"""Tests for domain enumerations."""

from __future__ import annotations

from tradie_escrow.domain.enums import (
    ACTIVE_PAYMENT_STATUSES,
    EventOutcome,
    JobStatus,
    PaymentStatus,
    PendingAction,
    ProposalStatus,
)


class TestPaymentStatus:
    def test_all_statuses_exist(self) -> None:
        expected = {"pending", "held_in_escrow", "released", "refunded", "failed"}
        assert {s.value for s in PaymentStatus} == expected

    def test_status_is_str_enum(self) -> None:
        assert isinstance(PaymentStatus.PENDING, str)
        assert PaymentStatus.HELD_IN_ESCROW == "held_in_escrow"

    def test_terminal_statuses(self) -> None:
        terminal = {s for s in PaymentStatus if s.is_terminal}
        assert terminal == {PaymentStatus.RELEASED, PaymentStatus.REFUNDED, PaymentStatus.FAILED}

    def test_active_statuses_are_the_non_terminal_ones(self) -> None:
        assert set(ACTIVE_PAYMENT_STATUSES) == {s for s in PaymentStatus if not s.is_terminal}


class TestJobStatus:
    def test_all_statuses_exist(self) -> None:
        expected = {"open", "in_progress", "review_pending", "disputed", "completed", "cancelled"}
        assert {s.value for s in JobStatus} == expected


class TestSmallVocabularies:
    def test_proposal_statuses(self) -> None:
        assert {s.value for s in ProposalStatus} == {"pending", "accepted", "rejected"}

    def test_pending_actions(self) -> None:
        assert PendingAction.RELEASE == "release"
        assert PendingAction.REFUND == "refund"

    def test_event_outcomes(self) -> None:
        assert {o.value for o in EventOutcome} == {"applied", "duplicate", "ignored"}
