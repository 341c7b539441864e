"""Shared plumbing for the booking aggregate services.

Every write to bookings, side tables and participants is a status-guarded
UPDATE: it only applies if the row is still in the expected prior state, and
the caller checks the affected row count.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError, StateConflictError, ValidationError
from app.database import as_utc
from app.models.booking import (
    Booking,
    BookingParticipant,
    IndividualBookingDetails,
    PrivateGroupBookingDetails,
)
from app.models.user import CoachProfile, User
from app.services.audit_service import AuditService, audit_service
from app.services.gateway_service import GatewayService, gateway_service
from app.services.notification_service import NotificationService, notification_service
from app.services.pricing_service import PricingService, pricing_service

logger = logging.getLogger(__name__)


class BookingAggregate:
    """Base for services that own booking and participant writes."""

    def __init__(
        self,
        gateway: GatewayService | None = None,
        notifier: NotificationService | None = None,
        audit: AuditService | None = None,
        pricing: PricingService | None = None,
    ) -> None:
        self.gateway = gateway or gateway_service
        self.notifier = notifier or notification_service
        self.audit = audit or audit_service
        self.pricing = pricing or pricing_service

    # ==================== LOADING ====================

    async def get_booking(self, db: AsyncSession, booking_id: UUID) -> Booking:
        """Load a booking with its side table and participants, refreshing stale copies."""
        result = await db.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFoundError("Booking", str(booking_id))
        return booking

    async def _get_user(self, db: AsyncSession, user_id: UUID) -> User:
        user = await db.get(User, user_id)
        if user is None:
            raise NotFoundError("User", str(user_id))
        return user

    async def _get_coach_profile(self, db: AsyncSession, coach_id: UUID) -> CoachProfile:
        profile = await db.get(CoachProfile, coach_id)
        if profile is None:
            raise NotFoundError("Coach", str(coach_id))
        return profile

    async def _get_bookable_coach(self, db: AsyncSession, coach_id: UUID) -> CoachProfile:
        """Coach who is approved, active and able to receive payouts."""
        profile = await self._get_coach_profile(db, coach_id)
        if profile.approval_status != "approved" or not profile.user.is_active:
            raise ValidationError("This coach is not accepting bookings")
        if not profile.can_receive_payouts:
            raise ValidationError("Coach has not completed payment setup")
        return profile

    # ==================== GUARDS ====================

    def _validate_window(self, start: datetime, end: datetime, now: datetime) -> int:
        """Return the session length in minutes."""
        if end <= start:
            raise ValidationError("Session must end after it starts")
        if start <= now:
            raise ValidationError("Session must start in the future")
        return int((end - start).total_seconds() // 60)

    async def _assert_slot_available(
        self,
        db: AsyncSession,
        coach_id: UUID,
        start: datetime,
        end: datetime,
        now: datetime,
    ) -> None:
        """Reject windows overlapping a live booking of the coach.

        Pending bookings only block the slot while locked for checkout or
        once their payment is authorized.
        """
        result = await db.execute(
            select(Booking.id)
            .outerjoin(IndividualBookingDetails, IndividualBookingDetails.booking_id == Booking.id)
            .outerjoin(PrivateGroupBookingDetails, PrivateGroupBookingDetails.booking_id == Booking.id)
            .where(
                Booking.coach_id == coach_id,
                Booking.scheduled_start_at < end,
                Booking.scheduled_end_at > start,
                Booking.fulfillment_status == "scheduled",
                or_(
                    Booking.approval_status == "accepted",
                    and_(
                        Booking.approval_status == "pending",
                        or_(
                            Booking.locked_until > now,
                            IndividualBookingDetails.payment_status == "authorized",
                            PrivateGroupBookingDetails.payment_status == "authorized",
                        ),
                    ),
                ),
            )
            .limit(1)
        )
        if result.first() is not None:
            raise StateConflictError("Time slot no longer available")

    def _session_started(self, booking: Booking, now: datetime) -> bool:
        return as_utc(booking.scheduled_start_at) <= now

    # ==================== GUARDED WRITES ====================

    async def _guarded_update(
        self,
        db: AsyncSession,
        model: Any,
        criteria: list[Any],
        values: dict[str, Any],
    ) -> int:
        """UPDATE rows still matching ``criteria``; returns affected row count."""
        result = await db.execute(
            update(model)
            .where(*criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def _transition_booking(
        self,
        db: AsyncSession,
        booking_id: UUID,
        expected: dict[str, Any],
        values: dict[str, Any],
    ) -> None:
        """Apply ``values`` to the booking only if it still matches ``expected``.

        Raises:
            StateConflictError: If the booking moved on concurrently
        """
        criteria = [Booking.id == booking_id]
        criteria += [_match(getattr(Booking, name), value) for name, value in expected.items()]
        if await self._guarded_update(db, Booking, criteria, values) != 1:
            raise StateConflictError("Booking was modified concurrently. Please refresh and try again.")

    async def _transition_details(
        self,
        db: AsyncSession,
        model: Any,
        booking_id: UUID,
        expected: dict[str, Any],
        values: dict[str, Any],
    ) -> None:
        criteria = [model.booking_id == booking_id]
        criteria += [_match(getattr(model, name), value) for name, value in expected.items()]
        if await self._guarded_update(db, model, criteria, values) != 1:
            raise StateConflictError("Booking payment was modified concurrently. Please refresh and try again.")

    async def _transition_participant(
        self,
        db: AsyncSession,
        participant_id: UUID,
        expected: dict[str, Any],
        values: dict[str, Any],
    ) -> None:
        criteria = [BookingParticipant.id == participant_id]
        criteria += [
            _match(getattr(BookingParticipant, name), value) for name, value in expected.items()
        ]
        if await self._guarded_update(db, BookingParticipant, criteria, values) != 1:
            raise StateConflictError("Participant was modified concurrently. Please refresh and try again.")

    # ==================== SIDE EFFECTS ====================

    async def _send(self, description: str, notification: Callable[[], Awaitable[bool]]) -> None:
        """Run a notification without letting it fail the operation."""
        try:
            sent = await notification()
        except Exception:
            logger.exception(f"Notification failed: {description}")
            return
        if not sent:
            logger.info(f"Notification not delivered: {description}")


def _match(column: Any, value: Any) -> Any:
    """Equality, NULL test, or membership depending on the expected value."""
    if value is None:
        return column.is_(None)
    if isinstance(value, (set, frozenset, list, tuple)):
        return column.in_(list(value))
    return column == value
