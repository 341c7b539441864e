"""Database models."""

from app.models.admin import AdminAction, BookingStateTransition
from app.models.booking import (
    Booking,
    BookingParticipant,
    IndividualBookingDetails,
    PrivateGroupBookingDetails,
    PublicGroupLessonDetails,
)
from app.models.payment import BookingPayment
from app.models.user import CoachProfile, GroupPricingTier, User

__all__ = [
    # User
    "User",
    "CoachProfile",
    "GroupPricingTier",
    # Booking
    "Booking",
    "IndividualBookingDetails",
    "PrivateGroupBookingDetails",
    "PublicGroupLessonDetails",
    "BookingParticipant",
    # Audit
    "BookingPayment",
    "BookingStateTransition",
    "AdminAction",
]
