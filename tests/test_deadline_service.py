"""Tests for the scheduled deadline, hold, lock and auto-complete scans."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

from sqlalchemy import update

from app.database import utcnow
from app.models.booking import Booking, BookingParticipant, IndividualBookingDetails
from app.services.deadline_service import DeadlineService
from tests.helpers import LOCATION, actor_for, session_window


async def _pending_booking(booking_service, db, client, coach, days_ahead=3):
    start, end = session_window(days_ahead)
    result = await booking_service.create_booking(db, actor_for(client), coach.id, start, end, LOCATION)
    assert result.success, result.error
    return result.data["booking_id"]


async def _set_due(db, booking_id, due):
    await db.execute(
        update(IndividualBookingDetails)
        .where(IndividualBookingDetails.booking_id == booking_id)
        .values(payment_due_at=due)
    )
    await db.commit()


class TestPaymentDeadlines:
    async def test_reminder_sent_once_per_band(self, db, deadline_service, booking_service, client, coach, notifier):
        booking_id = await _pending_booking(booking_service, db, client, coach)
        await _set_due(db, booking_id, utcnow() + timedelta(hours=12))

        first = await deadline_service.process_payment_deadlines(db)
        second = await deadline_service.process_payment_deadlines(db)

        assert first["reminders"] == 1
        assert second["reminders"] == 0
        assert notifier.names().count("notify_payment_reminder") == 1

    async def test_final_reminder(self, db, deadline_service, booking_service, client, coach, notifier):
        booking_id = await _pending_booking(booking_service, db, client, coach)
        await _set_due(db, booking_id, utcnow() + timedelta(minutes=30))

        results = await deadline_service.process_payment_deadlines(db)

        assert results["reminders"] == 1
        _, args, _ = notifier.sent[-1]
        assert args[-1] is True

    async def test_booking_outside_bands_left_alone(self, db, deadline_service, booking_service, client, coach):
        await _pending_booking(booking_service, db, client, coach)

        results = await deadline_service.process_payment_deadlines(db)

        assert results == {"processed": 0, "cancelled": 0, "reminders": 0, "errors": []}

    async def test_overdue_booking_cancelled(self, db, deadline_service, booking_service, sandbox, client, coach):
        booking_id = await _pending_booking(booking_service, db, client, coach)
        await _set_due(db, booking_id, utcnow() - timedelta(minutes=5))

        results = await deadline_service.process_payment_deadlines(db)
        rerun = await deadline_service.process_payment_deadlines(db)

        assert results["cancelled"] == 1
        assert rerun["processed"] == 0
        booking = await booking_service.get_booking(db, booking_id)
        assert booking.approval_status == "cancelled"
        assert booking.cancellation_reason == "Payment not received in time"

    async def test_one_failure_does_not_stop_the_scan(self, db, deadline_service, booking_service, make_user, coach):
        first = await _pending_booking(booking_service, db, await make_user("client"), coach, days_ahead=3)
        second = await _pending_booking(booking_service, db, await make_user("client"), coach, days_ahead=4)
        due = utcnow() + timedelta(hours=12)
        await _set_due(db, first, due)
        await _set_due(db, second, due)

        with patch.object(
            deadline_service.bookings,
            "send_payment_reminder",
            AsyncMock(side_effect=[RuntimeError("mail queue down"), True]),
        ):
            results = await deadline_service.process_payment_deadlines(db)

        assert results["processed"] == 2
        assert results["reminders"] == 1
        assert len(results["errors"]) == 1
        assert results["errors"][0]["error"] == "mail queue down"

    async def test_time_budget_truncates_scan(self, db, booking_service, lesson_service, client, coach):
        booking_id = await _pending_booking(booking_service, db, client, coach)
        await _set_due(db, booking_id, utcnow() - timedelta(minutes=5))
        scanner = DeadlineService(bookings=booking_service, lessons=lesson_service, time_budget_seconds=0)

        results = await scanner.process_payment_deadlines(db)

        assert results["truncated"] is True
        assert results["processed"] == 0


class TestParticipantHolds:
    async def test_expired_requests_released(self, db, deadline_service, lesson_service, sandbox, coach, client):
        start, end = session_window()
        lesson = await lesson_service.create_public_lesson(
            db, actor_for(coach), start, end, LOCATION, "Clinic", 4000, 4
        )
        joined = await lesson_service.join_lesson(db, actor_for(client), lesson.data["booking_id"])
        await db.execute(
            update(BookingParticipant)
            .where(BookingParticipant.id == joined.data["participant_id"])
            .values(expires_at=utcnow() - timedelta(minutes=1))
        )
        await db.commit()

        results = await deadline_service.expire_participant_holds(db)
        rerun = await deadline_service.expire_participant_holds(db)

        assert results["cancelled"] == 1
        assert rerun["processed"] == 0
        assert sandbox.intents[joined.data["payment_intent_id"]].status == "canceled"


class TestStaleLocks:
    async def test_passed_locks_cleared_once(self, db, deadline_service, booking_service, client, coach):
        booking_id = await _pending_booking(booking_service, db, client, coach)
        await db.execute(
            update(Booking).where(Booking.id == booking_id).values(locked_until=utcnow() - timedelta(minutes=1))
        )
        await db.commit()

        results = await deadline_service.cleanup_stale_locks(db)
        rerun = await deadline_service.cleanup_stale_locks(db)

        assert results["released"] == 1
        assert rerun["released"] == 0

    async def test_live_lock_kept(self, db, deadline_service, booking_service, client, coach):
        await _pending_booking(booking_service, db, client, coach)

        results = await deadline_service.cleanup_stale_locks(db)

        assert results["processed"] == 0


class TestAutoComplete:
    async def test_completes_old_bookings_and_lessons(
        self, db, deadline_service, booking_service, lesson_service, sandbox, client, coach
    ):
        booking_id = await _pending_booking(booking_service, db, client, coach, days_ahead=3)
        intent_id = (await booking_service.get_booking(db, booking_id)).individual_details.payment_intent_id
        sandbox.confirm(intent_id)
        await booking_service.confirm_payment(db, actor_for(client), booking_id)
        await booking_service.accept_booking(db, actor_for(coach), booking_id)
        start, end = session_window(days_ahead=5)
        lesson = await lesson_service.create_public_lesson(
            db, actor_for(coach), start, end, LOCATION, "Clinic", 4000, 4
        )
        old_start = utcnow() - timedelta(days=10)
        await db.execute(
            update(Booking)
            .where(Booking.id.in_([booking_id, lesson.data["booking_id"]]))
            .values(scheduled_start_at=old_start, scheduled_end_at=old_start + timedelta(hours=1))
        )
        await db.commit()

        results = await deadline_service.auto_complete_bookings(db)

        assert results["completed"] == 2
        assert results["errors"] == []
        booking = await booking_service.get_booking(db, booking_id)
        assert booking.fulfillment_status == "completed"

    async def test_unpaid_pending_booking_skipped(self, db, deadline_service, booking_service, client, coach):
        booking_id = await _pending_booking(booking_service, db, client, coach)
        old_start = utcnow() - timedelta(days=10)
        await db.execute(
            update(Booking)
            .where(Booking.id == booking_id)
            .values(scheduled_start_at=old_start, scheduled_end_at=old_start + timedelta(hours=1))
        )
        await db.commit()

        results = await deadline_service.auto_complete_bookings(db)

        assert results["processed"] == 0
