"""Scheduled booking maintenance.

Each scan selects its candidates, then hands every candidate to the booking
services on its own so one failure never blocks the rest. Re-running a scan
is safe: candidates that were already handled no longer match.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import Select, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import utcnow
from app.domain.booking_state import ApprovalStatus, BookingType, FulfillmentStatus
from app.models.booking import (
    Booking,
    BookingParticipant,
    IndividualBookingDetails,
    PrivateGroupBookingDetails,
)
from app.services.booking_service import BookingService, booking_service
from app.services.group_lesson_service import GroupLessonService, group_lesson_service

logger = logging.getLogger(__name__)


def _empty_results() -> dict[str, Any]:
    return {
        "processed": 0,
        "cancelled": 0,
        "reminders": 0,
        "errors": [],
    }


class DeadlineService:
    """Service for payment deadlines, hold expiry, stale locks and auto-completion."""

    def __init__(
        self,
        bookings: BookingService | None = None,
        lessons: GroupLessonService | None = None,
        time_budget_seconds: float = 240.0,
    ) -> None:
        self.bookings = bookings or booking_service
        self.lessons = lessons or group_lesson_service
        self.time_budget_seconds = time_budget_seconds

    def _out_of_time(self, started: float, results: dict[str, Any]) -> bool:
        if time.monotonic() - started < self.time_budget_seconds:
            return False
        results["truncated"] = True
        logger.warning("Scan stopped at its time budget; remaining candidates left for the next run")
        return True

    # ==================== PAYMENT DEADLINES ====================

    async def process_payment_deadlines(
        self, db: AsyncSession, now: datetime | None = None
    ) -> dict[str, Any]:
        """Send due payment reminders and cancel bookings whose payment window passed."""
        now = now or utcnow()
        started = time.monotonic()
        results = _empty_results()
        tolerance = timedelta(minutes=settings.reminder_tolerance_minutes)

        reminder_bands = (
            (False, timedelta(hours=settings.payment_reminder_hours)),
            (True, timedelta(minutes=settings.payment_final_reminder_minutes)),
        )
        for final, lead in reminder_bands:
            for booking_id in await self._reminder_candidates(db, now + lead - tolerance, now + lead + tolerance, final):
                if self._out_of_time(started, results):
                    return results
                results["processed"] += 1
                try:
                    if await self.bookings.send_payment_reminder(db, booking_id, final):
                        results["reminders"] += 1
                except Exception as e:
                    await db.rollback()
                    logger.exception(f"Payment reminder failed for booking {booking_id}")
                    results["errors"].append({"booking_id": str(booking_id), "error": str(e)})

        for booking_id in await self._overdue_candidates(db, now):
            if self._out_of_time(started, results):
                return results
            results["processed"] += 1
            try:
                outcome = await self.bookings.expire_unpaid_booking(db, booking_id)
                if outcome == "expired":
                    results["cancelled"] += 1
            except Exception as e:
                await db.rollback()
                logger.exception(f"Payment expiry failed for booking {booking_id}")
                results["errors"].append({"booking_id": str(booking_id), "error": str(e)})

        logger.info(
            f"Payment deadlines: {results['processed']} processed, {results['reminders']} reminders, "
            f"{results['cancelled']} cancelled, {len(results['errors'])} errors"
        )
        return results

    async def _reminder_candidates(
        self, db: AsyncSession, due_from: datetime, due_to: datetime, final: bool
    ) -> list[UUID]:
        ids: list[UUID] = []
        for model in (IndividualBookingDetails, PrivateGroupBookingDetails):
            flag = model.payment_final_reminder_sent_at if final else model.payment_reminder_sent_at
            stmt: Select = (
                select(model.booking_id)
                .join(Booking, Booking.id == model.booking_id)
                .where(
                    Booking.approval_status == ApprovalStatus.PENDING.value,
                    model.payment_status == "awaiting_client_payment",
                    model.payment_due_at >= due_from,
                    model.payment_due_at <= due_to,
                    flag.is_(None),
                )
            )
            ids.extend((await db.execute(stmt)).scalars().all())
        return ids

    async def _overdue_candidates(self, db: AsyncSession, now: datetime) -> list[UUID]:
        ids: list[UUID] = []
        for model in (IndividualBookingDetails, PrivateGroupBookingDetails):
            stmt = (
                select(model.booking_id)
                .join(Booking, Booking.id == model.booking_id)
                .where(
                    Booking.approval_status == ApprovalStatus.PENDING.value,
                    model.payment_status == "awaiting_client_payment",
                    model.payment_due_at < now,
                )
            )
            ids.extend((await db.execute(stmt)).scalars().all())
        return ids

    # ==================== PARTICIPANT HOLDS ====================

    async def expire_participant_holds(
        self, db: AsyncSession, now: datetime | None = None
    ) -> dict[str, Any]:
        """Release seat requests the coach did not answer before they expired."""
        now = now or utcnow()
        started = time.monotonic()
        results = _empty_results()

        result = await db.execute(
            select(BookingParticipant.id)
            .join(Booking, Booking.id == BookingParticipant.booking_id)
            .where(
                Booking.booking_type == BookingType.PUBLIC_GROUP.value,
                BookingParticipant.status == "awaiting_coach",
                BookingParticipant.payment_status.in_(("pending", "authorized")),
                BookingParticipant.expires_at <= now,
            )
        )
        for participant_id in result.scalars().all():
            if self._out_of_time(started, results):
                return results
            results["processed"] += 1
            try:
                if await self.lessons.expire_participant_hold(db, participant_id):
                    results["cancelled"] += 1
            except Exception as e:
                await db.rollback()
                logger.exception(f"Hold expiry failed for participant {participant_id}")
                results["errors"].append({"participant_id": str(participant_id), "error": str(e)})

        logger.info(
            f"Participant holds: {results['processed']} processed, {results['cancelled']} expired, "
            f"{len(results['errors'])} errors"
        )
        return results

    # ==================== LOCKS ====================

    async def cleanup_stale_locks(self, db: AsyncSession, now: datetime | None = None) -> dict[str, Any]:
        """Clear checkout locks that have passed."""
        now = now or utcnow()
        results = _empty_results()
        results["released"] = 0

        result = await db.execute(
            select(Booking.id).where(Booking.locked_until.is_not(None), Booking.locked_until < now)
        )
        for booking_id in result.scalars().all():
            results["processed"] += 1
            try:
                if await self.bookings.release_stale_lock(db, booking_id):
                    results["released"] += 1
            except Exception as e:
                await db.rollback()
                logger.exception(f"Lock cleanup failed for booking {booking_id}")
                results["errors"].append({"booking_id": str(booking_id), "error": str(e)})

        if results["released"]:
            logger.info(f"Released {results['released']} stale booking locks")
        return results

    # ==================== AUTO-COMPLETION ====================

    async def auto_complete_bookings(
        self, db: AsyncSession, now: datetime | None = None
    ) -> dict[str, Any]:
        """Complete accepted sessions that ended more than the grace period ago."""
        now = now or utcnow()
        started = time.monotonic()
        results = _empty_results()
        results["completed"] = 0
        cutoff = now - timedelta(days=settings.auto_complete_after_days)

        result = await db.execute(
            select(Booking.id, Booking.booking_type)
            .outerjoin(IndividualBookingDetails, IndividualBookingDetails.booking_id == Booking.id)
            .outerjoin(PrivateGroupBookingDetails, PrivateGroupBookingDetails.booking_id == Booking.id)
            .where(
                Booking.approval_status == ApprovalStatus.ACCEPTED.value,
                Booking.fulfillment_status == FulfillmentStatus.SCHEDULED.value,
                Booking.scheduled_end_at < cutoff,
                or_(
                    Booking.booking_type == BookingType.PUBLIC_GROUP.value,
                    IndividualBookingDetails.payment_status.in_(("captured", "partially_refunded")),
                    PrivateGroupBookingDetails.payment_status.in_(("captured", "partially_refunded")),
                ),
            )
        )
        for booking_id, booking_type in result.all():
            if self._out_of_time(started, results):
                return results
            results["processed"] += 1
            if booking_type == BookingType.PUBLIC_GROUP:
                outcome = await self.lessons.auto_complete_lesson(db, booking_id)
            else:
                outcome = await self.bookings.auto_complete_booking(db, booking_id)
            if outcome.success:
                results["completed"] += 1
            else:
                results["errors"].append({"booking_id": str(booking_id), "error": outcome.error})

        logger.info(
            f"Auto-complete: {results['completed']} of {results['processed']} bookings completed"
        )
        return results


# Singleton instance
deadline_service = DeadlineService()
