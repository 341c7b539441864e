"""Payment and participant state machines."""

from enum import Enum

from app.core.exceptions import StateConflictError


class IntentStatus(str, Enum):
    """Statuses reported by the payment processor for a payment intent."""

    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    REQUIRES_CAPTURE = "requires_capture"
    CANCELED = "canceled"
    SUCCEEDED = "succeeded"


# Booking-level payment for individual and private-group bookings
PAYMENT_TRANSITIONS = {
    "awaiting_client_payment": {"authorized", "captured", "cancelled", "failed"},
    "authorized": {"captured", "cancelled", "failed"},
    "captured": {"refunded", "partially_refunded"},
    "partially_refunded": {"refunded"},
    "refunded": set(),
    "cancelled": set(),
    "failed": set(),
}

# Seat-level payment for group participants
PARTICIPANT_PAYMENT_TRANSITIONS = {
    "pending": {"authorized", "captured", "cancelled", "failed"},
    "authorized": {"captured", "cancelled", "failed"},
    "captured": {"refunded"},
    "cancelled": set(),
    "refunded": set(),
    "failed": set(),
}

PARTICIPANT_TRANSITIONS = {
    "awaiting_coach": {"accepted", "declined", "cancelled"},
    "accepted": {"cancelled"},
    "declined": set(),
    "cancelled": set(),
}

# Hold statuses that can still be released without a refund
RELEASABLE_PAYMENT_STATUSES = {"awaiting_client_payment", "authorized", "pending"}


def assert_payment_transition(current: str, target: str) -> None:
    allowed = PAYMENT_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise StateConflictError(
            f"Invalid payment transition: {current} -> {target}"
        )


def assert_participant_payment_transition(current: str, target: str) -> None:
    allowed = PARTICIPANT_PAYMENT_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise StateConflictError(
            f"Invalid participant payment transition: {current} -> {target}"
        )


def assert_participant_transition(current: str, target: str) -> None:
    allowed = PARTICIPANT_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise StateConflictError(
            f"Invalid participant transition: {current} -> {target}"
        )
