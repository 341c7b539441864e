"""Payment-intent audit records."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.database import Base


class BookingPayment(Base):
    """Latest known lifecycle state of one external payment intent.

    Keyed by the processor's intent id; events update the existing row.
    """

    __tablename__ = "booking_payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_intent_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # Participant rows can be deleted when a user leaves, so no FK here
    participant_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, index=True)

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="usd")
    status: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # created, requires_payment_method, requires_capture, authorized, captured, cancelled, refunded, failed
    capture_method: Mapped[str] = mapped_column(String(20), default="manual")
    refunded_amount_cents: Mapped[int] = mapped_column(Integer, default=0)

    last_event_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
