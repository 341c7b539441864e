"""Booking aggregate database models.

A booking row carries the fields shared by every kind of session; the
``booking_type`` discriminant selects exactly one side table holding the
fields of that kind.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Union

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.database import Base
from app.domain.booking_state import BookingType
from app.models.user import User

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Booking(Base):
    """One scheduled coaching session."""

    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint(
            "booking_type IN ('individual', 'private_group', 'public_group')",
            name="ck_bookings_booking_type",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    coach_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    booking_type: Mapped[str] = mapped_column(String(20), nullable=False)

    # Schedule
    scheduled_start_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    scheduled_end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    location: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    client_message: Mapped[str | None] = mapped_column(Text)

    # Status
    approval_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", index=True
    )  # pending, accepted, declined, cancelled
    fulfillment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="scheduled"
    )  # scheduled, completed, disputed

    # Checkout
    idempotency_key: Mapped[str | None] = mapped_column(String(64), unique=True)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)

    # Coach response
    coach_responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    decline_reason: Mapped[str | None] = mapped_column(Text)

    # Cancellation
    cancelled_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id"))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancellation_reason: Mapped[str | None] = mapped_column(Text)
    refund_amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    refund_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Fulfillment
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    disputed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    dispute_reason: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    coach: Mapped[User] = relationship("User", foreign_keys=[coach_id], lazy="joined")
    individual_details: Mapped[IndividualBookingDetails | None] = relationship(
        back_populates="booking", uselist=False, lazy="selectin", cascade="all, delete-orphan"
    )
    private_group_details: Mapped[PrivateGroupBookingDetails | None] = relationship(
        back_populates="booking", uselist=False, lazy="selectin", cascade="all, delete-orphan"
    )
    public_group_details: Mapped[PublicGroupLessonDetails | None] = relationship(
        back_populates="booking", uselist=False, lazy="selectin", cascade="all, delete-orphan"
    )
    participants: Mapped[list[BookingParticipant]] = relationship(
        back_populates="booking",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="BookingParticipant.created_at",
    )

    @property
    def details(self) -> BookingDetails:
        """Side-table row for this booking's kind."""
        kind = BookingType(self.booking_type)
        if kind is BookingType.INDIVIDUAL:
            details: BookingDetails | None = self.individual_details
        elif kind is BookingType.PRIVATE_GROUP:
            details = self.private_group_details
        elif kind is BookingType.PUBLIC_GROUP:
            details = self.public_group_details
        else:
            raise ValueError(f"Unhandled booking type: {kind}")
        if details is None:
            raise LookupError(f"Booking {self.id} has no {kind.value} details")
        return details


class IndividualBookingDetails(Base):
    """One client booking a coach one-on-one."""

    __tablename__ = "individual_booking_details"

    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )

    # Pricing (cents)
    coach_rate_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    client_pays_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    processor_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    coach_payout_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    # Payment
    payment_status: Mapped[str] = mapped_column(
        String(30), nullable=False, default="awaiting_client_payment", index=True
    )
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), unique=True)
    payment_due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)
    payment_reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    payment_final_reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    authorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    client_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    booking: Mapped[Booking] = relationship(back_populates="individual_details")
    client: Mapped[User] = relationship("User", lazy="joined")

    @property
    def payer_id(self) -> uuid.UUID:
        return self.client_id

    @property
    def payer(self) -> User:
        return self.client

    @property
    def charge_amount_cents(self) -> int:
        return self.client_pays_cents


class PrivateGroupBookingDetails(Base):
    """An organizer booking a coach for a closed group; one primary hold covers everyone."""

    __tablename__ = "private_group_booking_details"
    __table_args__ = (
        CheckConstraint(
            "captured_participants <= current_participants",
            name="ck_private_group_captured_le_current",
        ),
        CheckConstraint(
            "current_participants <= max_participants",
            name="ck_private_group_current_le_max",
        ),
    )

    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True
    )
    organizer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )

    # Pricing (cents)
    price_per_person_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    total_gross_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    processor_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    coach_payout_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    # Capacity
    min_participants: Mapped[int] = mapped_column(Integer, nullable=False)
    max_participants: Mapped[int] = mapped_column(Integer, nullable=False)
    current_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    captured_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Payment
    payment_status: Mapped[str] = mapped_column(
        String(30), nullable=False, default="awaiting_client_payment", index=True
    )
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), unique=True)
    payment_due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)
    payment_reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    payment_final_reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    authorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    organizer_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    booking: Mapped[Booking] = relationship(back_populates="private_group_details")
    organizer: Mapped[User] = relationship("User", lazy="joined")

    @property
    def payer_id(self) -> uuid.UUID:
        return self.organizer_id

    @property
    def payer(self) -> User:
        return self.organizer

    @property
    def charge_amount_cents(self) -> int:
        return self.total_gross_cents


class PublicGroupLessonDetails(Base):
    """A coach-hosted lesson open to anyone; each participant pays for their own seat."""

    __tablename__ = "public_group_lesson_details"
    __table_args__ = (
        CheckConstraint(
            "captured_participants <= current_participants",
            name="ck_public_group_captured_le_current",
        ),
        CheckConstraint(
            "current_participants <= max_participants",
            name="ck_public_group_current_le_max",
        ),
        CheckConstraint(
            "authorized_participants >= 0 AND captured_participants >= 0",
            name="ck_public_group_counters_non_negative",
        ),
    )

    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    price_per_person_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    # Capacity
    min_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_participants: Mapped[int] = mapped_column(Integer, nullable=False)
    current_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    authorized_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    captured_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    capacity_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="open"
    )  # open, full, closed, cancelled

    # Payout
    coach_payout_cents: Mapped[int | None] = mapped_column(Integer)
    transfer_id: Mapped[str | None] = mapped_column(String(255))

    booking: Mapped[Booking] = relationship(back_populates="public_group_details")


class BookingParticipant(Base):
    """One user's seat in a group booking."""

    __tablename__ = "booking_participants"
    __table_args__ = (
        UniqueConstraint("booking_id", "user_id", name="uq_booking_participant"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    is_organizer: Mapped[bool] = mapped_column(Boolean, default=False)

    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", index=True
    )  # pending, authorized, captured, cancelled, refunded, failed
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="awaiting_coach", index=True
    )  # awaiting_coach, accepted, declined, cancelled
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), unique=True)
    amount_cents: Mapped[int | None] = mapped_column(Integer)

    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)
    authorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    booking: Mapped[Booking] = relationship(back_populates="participants")
    user: Mapped[User] = relationship("User", lazy="joined")


BookingDetails = Union[IndividualBookingDetails, PrivateGroupBookingDetails, PublicGroupLessonDetails]
PrimaryPaymentDetails = Union[IndividualBookingDetails, PrivateGroupBookingDetails]
