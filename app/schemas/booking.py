"""Booking-related Pydantic schemas."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.domain.booking_state import derive_ui_status
from app.models.booking import Booking


class Location(BaseModel):
    """Where a session takes place."""

    name: str = Field(..., min_length=1, max_length=200)
    address: str | None = Field(None, max_length=500)
    latitude: float | None = Field(None, ge=-90, le=90)
    longitude: float | None = Field(None, ge=-180, le=180)


class SessionWindow(BaseModel):
    """Start/end of a session; both must carry a timezone."""

    scheduled_start_at: datetime
    scheduled_end_at: datetime
    location: Location

    @field_validator("scheduled_start_at", "scheduled_end_at")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("datetime must include a timezone")
        return v

    @field_validator("scheduled_end_at")
    @classmethod
    def validate_end(cls, v: datetime, info) -> datetime:
        start = info.data.get("scheduled_start_at")
        if start and v <= start:
            raise ValueError("scheduled_end_at must be after scheduled_start_at")
        return v


class BookingCreate(SessionWindow):
    """Schema for requesting an individual session."""

    coach_id: UUID
    client_message: str | None = Field(None, max_length=1000)
    payment_intent_id: str | None = Field(None, max_length=255)


class PrivateGroupBookingCreate(SessionWindow):
    """Schema for requesting a private group session; the organizer pays for everyone."""

    coach_id: UUID
    participant_ids: list[UUID] = Field(..., min_length=1, max_length=50)
    client_message: str | None = Field(None, max_length=1000)


class BookingDecline(BaseModel):
    reason: str | None = Field(None, max_length=1000)


class BookingCancel(BaseModel):
    reason: str | None = Field(None, max_length=1000)


class DisputeCreate(BaseModel):
    reason: str = Field(..., min_length=10, max_length=2000)


class BookingActionResponse(BaseModel):
    """Outcome of a booking operation."""

    success: bool = True
    data: dict[str, Any] = Field(default_factory=dict)


class ParticipantResponse(BaseModel):
    """Schema for one seat in a group booking."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    is_organizer: bool
    status: str
    payment_status: str
    amount_cents: int | None
    expires_at: datetime | None
    created_at: datetime | None = None


class BookingResponse(BaseModel):
    """Schema for booking response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    coach_id: UUID
    booking_type: str
    scheduled_start_at: datetime
    scheduled_end_at: datetime
    duration_minutes: int
    location: dict[str, Any]
    client_message: str | None

    # Status
    status: str
    approval_status: str
    fulfillment_status: str
    payment_status: str | None = None
    capacity_status: str | None = None

    # Money (cents)
    amount_cents: int | None = None
    coach_payout_cents: int | None = None
    refund_amount_cents: int = 0

    payment_due_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None

    # Group lessons
    title: str | None = None
    max_participants: int | None = None
    current_participants: int | None = None
    participants: list[ParticipantResponse] = Field(default_factory=list)

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingResponse":
        """Flatten a booking and its side table into one response."""
        details = booking.details
        payment_status = getattr(details, "payment_status", None)
        capacity_status = getattr(details, "capacity_status", None)
        if booking.public_group_details is not None:
            amount = booking.public_group_details.price_per_person_cents
        else:
            amount = details.charge_amount_cents
        return cls(
            id=booking.id,
            coach_id=booking.coach_id,
            booking_type=booking.booking_type,
            scheduled_start_at=booking.scheduled_start_at,
            scheduled_end_at=booking.scheduled_end_at,
            duration_minutes=booking.duration_minutes,
            location=booking.location,
            client_message=booking.client_message,
            status=derive_ui_status(
                booking.approval_status, booking.fulfillment_status, payment_status, capacity_status
            ),
            approval_status=booking.approval_status,
            fulfillment_status=booking.fulfillment_status,
            payment_status=payment_status,
            capacity_status=capacity_status,
            amount_cents=amount,
            coach_payout_cents=details.coach_payout_cents,
            refund_amount_cents=booking.refund_amount_cents or 0,
            payment_due_at=getattr(details, "payment_due_at", None),
            cancelled_at=booking.cancelled_at,
            cancellation_reason=booking.cancellation_reason,
            completed_at=booking.completed_at,
            created_at=booking.created_at,
            title=getattr(details, "title", None),
            max_participants=getattr(details, "max_participants", None),
            current_participants=getattr(details, "current_participants", None),
            participants=[ParticipantResponse.model_validate(p) for p in booking.participants],
        )


class BookingListResponse(BaseModel):
    """Paginated booking list."""

    items: list[BookingResponse]
    total: int
    page: int
    page_size: int
