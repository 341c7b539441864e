"""Pydantic schemas for API validation."""

from app.schemas.admin import (
    AdminRefund,
    CoachReview,
    DisputeResolution,
    PayoutAccountResponse,
    UserStatusChange,
)
from app.schemas.booking import (
    BookingActionResponse,
    BookingCancel,
    BookingCreate,
    BookingDecline,
    BookingListResponse,
    BookingResponse,
    DisputeCreate,
    PrivateGroupBookingCreate,
)
from app.schemas.lesson import LessonCreate, ParticipantDecline

__all__ = [
    "AdminRefund",
    "BookingActionResponse",
    "BookingCancel",
    "BookingCreate",
    "BookingDecline",
    "BookingListResponse",
    "BookingResponse",
    "CoachReview",
    "DisputeCreate",
    "DisputeResolution",
    "LessonCreate",
    "ParticipantDecline",
    "PayoutAccountResponse",
    "PrivateGroupBookingCreate",
    "UserStatusChange",
]
