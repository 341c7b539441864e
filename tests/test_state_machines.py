"""Tests for booking, payment and participant transition tables."""

import pytest

from app.core.exceptions import StateConflictError
from app.domain.booking_state import (
    assert_approval_transition,
    assert_capacity_transition,
    assert_fulfillment_transition,
    can_cancel,
    derive_ui_status,
)
from app.domain.payment_state import (
    assert_participant_payment_transition,
    assert_participant_transition,
    assert_payment_transition,
)


class TestApprovalTransitions:
    @pytest.mark.parametrize("target", ["accepted", "declined", "cancelled"])
    def test_pending_moves_anywhere(self, target):
        assert_approval_transition("pending", target)

    @pytest.mark.parametrize(
        "current,target",
        [("accepted", "declined"), ("accepted", "pending"), ("declined", "accepted"), ("cancelled", "accepted")],
    )
    def test_rejected(self, current, target):
        with pytest.raises(StateConflictError):
            assert_approval_transition(current, target)


class TestFulfillmentTransitions:
    def test_dispute_then_complete(self):
        assert_fulfillment_transition("scheduled", "disputed")
        assert_fulfillment_transition("disputed", "completed")

    def test_completed_is_terminal(self):
        with pytest.raises(StateConflictError):
            assert_fulfillment_transition("completed", "disputed")


class TestCapacityTransitions:
    def test_full_reopens(self):
        assert_capacity_transition("full", "open")

    def test_closed_is_terminal(self):
        with pytest.raises(StateConflictError):
            assert_capacity_transition("closed", "open")


class TestPaymentTransitions:
    def test_capture_paths(self):
        assert_payment_transition("awaiting_client_payment", "authorized")
        assert_payment_transition("authorized", "captured")
        assert_payment_transition("captured", "partially_refunded")
        assert_payment_transition("partially_refunded", "refunded")

    def test_cancelled_hold_cannot_be_captured(self):
        with pytest.raises(StateConflictError):
            assert_payment_transition("cancelled", "captured")

    def test_participant_payment(self):
        assert_participant_payment_transition("pending", "authorized")
        with pytest.raises(StateConflictError):
            assert_participant_payment_transition("refunded", "captured")

    def test_participant_status(self):
        assert_participant_transition("awaiting_coach", "declined")
        with pytest.raises(StateConflictError):
            assert_participant_transition("accepted", "declined")


class TestCanCancel:
    def test_pending_and_accepted_scheduled(self):
        assert can_cancel("pending", "scheduled") == (True, None)
        assert can_cancel("accepted", "scheduled") == (True, None)

    @pytest.mark.parametrize(
        "approval,fulfillment",
        [("cancelled", "scheduled"), ("declined", "scheduled"), ("accepted", "completed"), ("accepted", "disputed")],
    )
    def test_refused(self, approval, fulfillment):
        allowed, error = can_cancel(approval, fulfillment)

        assert allowed is False
        assert error


class TestDeriveUiStatus:
    @pytest.mark.parametrize(
        "approval,fulfillment,payment,capacity,expected",
        [
            ("accepted", "disputed", "captured", None, "disputed"),
            ("accepted", "completed", "captured", None, "completed"),
            ("declined", "scheduled", "cancelled", None, "declined"),
            ("cancelled", "scheduled", "refunded", None, "cancelled"),
            ("accepted", "scheduled", None, "open", "open"),
            ("pending", "scheduled", "awaiting_client_payment", None, "awaiting_payment"),
            ("pending", "scheduled", "authorized", None, "awaiting_coach"),
            ("accepted", "scheduled", "captured", None, "confirmed"),
            ("accepted", "scheduled", None, "full", "confirmed"),
        ],
    )
    def test_precedence(self, approval, fulfillment, payment, capacity, expected):
        assert derive_ui_status(approval, fulfillment, payment, capacity) == expected
