"""Booking state machine."""

from enum import Enum

from app.core.exceptions import StateConflictError


class BookingType(str, Enum):
    """Kind of session; selects the booking's side table."""

    INDIVIDUAL = "individual"
    PRIVATE_GROUP = "private_group"
    PUBLIC_GROUP = "public_group"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"


class FulfillmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    DISPUTED = "disputed"


class CapacityStatus(str, Enum):
    OPEN = "open"
    FULL = "full"
    CLOSED = "closed"
    CANCELLED = "cancelled"


APPROVAL_TRANSITIONS = {
    "pending": {"accepted", "declined", "cancelled"},
    "accepted": {"cancelled"},
    "declined": set(),
    "cancelled": set(),
}

FULFILLMENT_TRANSITIONS = {
    "scheduled": {"completed", "disputed"},
    "disputed": {"completed"},
    "completed": set(),
}

CAPACITY_TRANSITIONS = {
    "open": {"full", "closed", "cancelled"},
    "full": {"open", "closed", "cancelled"},
    "closed": set(),
    "cancelled": set(),
}


def assert_approval_transition(current: str, target: str) -> None:
    allowed = APPROVAL_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise StateConflictError(
            f"Invalid booking transition: {current} -> {target}"
        )


def assert_fulfillment_transition(current: str, target: str) -> None:
    allowed = FULFILLMENT_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise StateConflictError(
            f"Invalid fulfillment transition: {current} -> {target}"
        )


def assert_capacity_transition(current: str, target: str) -> None:
    allowed = CAPACITY_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise StateConflictError(
            f"Invalid lesson capacity transition: {current} -> {target}"
        )


def can_cancel(approval_status: str, fulfillment_status: str) -> tuple[bool, str | None]:
    """Check whether a booking may still be cancelled.

    Returns:
        Tuple of (can_cancel, error_message)
    """
    if approval_status == ApprovalStatus.CANCELLED:
        return False, "Booking is already cancelled"
    if approval_status == ApprovalStatus.DECLINED:
        return False, "Booking was declined"
    if fulfillment_status != FulfillmentStatus.SCHEDULED:
        return False, f"Cannot cancel a {fulfillment_status} booking"
    return True, None


def derive_ui_status(
    approval_status: str,
    fulfillment_status: str,
    payment_status: str | None = None,
    capacity_status: str | None = None,
) -> str:
    """Collapse the status fields into the single status shown to users.

    Fulfillment wins over approval, which wins over capacity and payment.
    """
    if fulfillment_status == FulfillmentStatus.DISPUTED:
        return "disputed"
    if fulfillment_status == FulfillmentStatus.COMPLETED:
        return "completed"
    if approval_status == ApprovalStatus.DECLINED:
        return "declined"
    if approval_status == ApprovalStatus.CANCELLED:
        return "cancelled"
    if capacity_status == CapacityStatus.OPEN:
        return "open"
    if payment_status == "awaiting_client_payment":
        return "awaiting_payment"
    if approval_status == ApprovalStatus.PENDING:
        return "awaiting_coach"
    return "confirmed"
