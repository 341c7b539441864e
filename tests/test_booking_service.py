"""Tests for the individual and private-group booking lifecycle."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch
from uuid import uuid4

from sqlalchemy import select, update

from app.core.exceptions import GatewayError
from app.database import utcnow
from app.models.admin import BookingStateTransition
from app.models.booking import Booking, BookingParticipant, IndividualBookingDetails
from app.models.payment import BookingPayment
from app.models.user import CoachProfile
from tests.helpers import LOCATION, actor_for, session_window


async def _create(booking_service, db, client, coach, days_ahead=3, **kwargs):
    start, end = session_window(days_ahead)
    return await booking_service.create_booking(
        db, actor_for(client), coach.id, start, end, LOCATION, **kwargs
    )


async def _create_authorized(booking_service, sandbox, db, client, coach, days_ahead=3):
    result = await _create(booking_service, db, client, coach, days_ahead)
    assert result.success, result.error
    sandbox.confirm(result.data["payment_intent_id"])
    confirmed = await booking_service.confirm_payment(db, actor_for(client), result.data["booking_id"])
    assert confirmed.success, confirmed.error
    return result.data["booking_id"]


async def _create_accepted(booking_service, sandbox, db, client, coach, days_ahead=3):
    booking_id = await _create_authorized(booking_service, sandbox, db, client, coach, days_ahead)
    accepted = await booking_service.accept_booking(db, actor_for(coach), booking_id)
    assert accepted.success, accepted.error
    return booking_id


async def _move_session(db, booking_id, start):
    await db.execute(
        update(Booking)
        .where(Booking.id == booking_id)
        .values(scheduled_start_at=start, scheduled_end_at=start + timedelta(hours=1))
    )
    await db.commit()


class TestCreateBooking:
    async def test_creates_pending_booking_with_hold(self, db, booking_service, sandbox, client, coach, notifier):
        result = await _create(booking_service, db, client, coach)

        assert result.success, result.error
        assert result.data["client_pays_cents"] == 7301
        assert result.data["coach_payout_cents"] == 6000
        assert result.data["payment_status"] == "awaiting_client_payment"
        assert result.data["status"] == "awaiting_payment"
        assert result.data["client_secret"]

        booking = await booking_service.get_booking(db, result.data["booking_id"])
        assert booking.approval_status == "pending"
        assert booking.locked_until is not None
        assert booking.individual_details.payment_due_at is not None

        intent = sandbox.intents[result.data["payment_intent_id"]]
        assert intent.amount == 7301
        assert intent.metadata["booking_id"] == str(booking.id)
        assert notifier.names() == ["notify_booking_request"]

    async def test_records_payment_and_transitions(self, db, booking_service, client, coach):
        result = await _create(booking_service, db, client, coach)

        payment = (
            await db.execute(
                select(BookingPayment).where(BookingPayment.payment_intent_id == result.data["payment_intent_id"])
            )
        ).scalar_one()
        assert payment.status == "created"
        transitions = (
            await db.execute(
                select(BookingStateTransition).where(
                    BookingStateTransition.booking_id == result.data["booking_id"]
                )
            )
        ).scalars().all()
        assert {t.field_name for t in transitions} == {"approval_status", "payment_status"}

    async def test_retry_returns_existing_booking(self, db, booking_service, sandbox, client, coach):
        start, end = session_window()
        first = await booking_service.create_booking(db, actor_for(client), coach.id, start, end, LOCATION)
        second = await booking_service.create_booking(db, actor_for(client), coach.id, start, end, LOCATION)

        assert second.success
        assert second.data["duplicate"] is True
        assert second.data["booking_id"] == first.data["booking_id"]
        assert len(sandbox.intents) == 1

    async def test_overlapping_locked_slot_rejected(self, db, booking_service, make_user, client, coach):
        await _create(booking_service, db, client, coach)
        other = await make_user("client")

        result = await _create(booking_service, db, other, coach)

        assert not result.success
        assert result.status_code == 409
        assert result.error == "Time slot no longer available"

    async def test_unlocked_unpaid_booking_does_not_block_slot(self, db, booking_service, make_user, client, coach):
        first = await _create(booking_service, db, client, coach)
        await db.execute(
            update(Booking).where(Booking.id == first.data["booking_id"]).values(locked_until=None)
        )
        await db.commit()
        other = await make_user("client")

        result = await _create(booking_service, db, other, coach)

        assert result.success, result.error

    async def test_coach_role_cannot_book(self, db, booking_service, make_coach, coach):
        other_coach = await make_coach()

        result = await _create(booking_service, db, other_coach, coach)

        assert not result.success
        assert result.status_code == 403

    async def test_unapproved_coach_rejected(self, db, booking_service, make_coach, client):
        pending_coach = await make_coach(approval_status="pending")

        result = await _create(booking_service, db, client, pending_coach)

        assert not result.success
        assert result.error == "This coach is not accepting bookings"

    async def test_coach_without_payouts_rejected(self, db, booking_service, make_coach, client):
        coach = await make_coach(payouts_enabled=False)

        result = await _create(booking_service, db, client, coach)

        assert not result.success
        assert result.error == "Coach has not completed payment setup"

    async def test_past_window_rejected(self, db, booking_service, client, coach):
        result = await _create(booking_service, db, client, coach, days_ahead=-1)

        assert not result.success
        assert result.status_code == 422

    async def test_adopts_authorized_intent(self, db, booking_service, sandbox, client, coach):
        intent = await sandbox.create_authorization(7301, None, {})
        sandbox.confirm(intent.id)

        result = await _create(booking_service, db, client, coach, payment_intent_id=intent.id)

        assert result.success, result.error
        assert result.data["payment_status"] == "authorized"
        assert result.data["payment_due_at"] is None

    async def test_adopted_intent_amount_must_match(self, db, booking_service, sandbox, client, coach):
        intent = await sandbox.create_authorization(5000, None, {})
        sandbox.confirm(intent.id)

        result = await _create(booking_service, db, client, coach, payment_intent_id=intent.id)

        assert not result.success
        assert "does not match" in result.error


class TestConfirmPayment:
    async def test_moves_to_authorized(self, db, booking_service, sandbox, client, coach):
        booking_id = await _create_authorized(booking_service, sandbox, db, client, coach)

        booking = await booking_service.get_booking(db, booking_id)
        assert booking.individual_details.payment_status == "authorized"
        assert booking.individual_details.authorized_at is not None

    async def test_card_not_entered(self, db, booking_service, client, coach):
        created = await _create(booking_service, db, client, coach)

        result = await booking_service.confirm_payment(db, actor_for(client), created.data["booking_id"])

        assert not result.success
        assert "requires_payment_method" in result.error

    async def test_only_payer_can_confirm(self, db, booking_service, sandbox, make_user, client, coach):
        created = await _create(booking_service, db, client, coach)
        sandbox.confirm(created.data["payment_intent_id"])
        stranger = await make_user("client")

        result = await booking_service.confirm_payment(db, actor_for(stranger), created.data["booking_id"])

        assert result.status_code == 403


class TestAcceptDecline:
    async def test_accept_captures(self, db, booking_service, sandbox, client, coach, notifier):
        booking_id = await _create_accepted(booking_service, sandbox, db, client, coach)

        booking = await booking_service.get_booking(db, booking_id)
        assert booking.approval_status == "accepted"
        assert booking.locked_until is None
        assert booking.individual_details.payment_status == "captured"
        assert sandbox.intents[booking.individual_details.payment_intent_id].status == "succeeded"
        assert "notify_booking_accepted" in notifier.names()

    async def test_accept_without_payment_leaves_booking_pending(self, db, booking_service, sandbox, client, coach):
        created = await _create(booking_service, db, client, coach)

        result = await booking_service.accept_booking(db, actor_for(coach), created.data["booking_id"])

        assert not result.success
        assert result.status_code == 409
        booking = await booking_service.get_booking(db, created.data["booking_id"])
        assert booking.approval_status == "pending"
        assert booking.individual_details.payment_status == "awaiting_client_payment"

    async def test_only_booked_coach_can_accept(self, db, booking_service, sandbox, make_coach, client, coach):
        booking_id = await _create_authorized(booking_service, sandbox, db, client, coach)
        other_coach = await make_coach()

        result = await booking_service.accept_booking(db, actor_for(other_coach), booking_id)

        assert result.status_code == 403

    async def test_accept_twice_conflicts(self, db, booking_service, sandbox, client, coach):
        booking_id = await _create_accepted(booking_service, sandbox, db, client, coach)

        result = await booking_service.accept_booking(db, actor_for(coach), booking_id)

        assert not result.success
        assert result.status_code == 409

    async def test_decline_releases_hold(self, db, booking_service, sandbox, client, coach):
        booking_id = await _create_authorized(booking_service, sandbox, db, client, coach)

        result = await booking_service.decline_booking(db, actor_for(coach), booking_id, "Fully booked")

        assert result.success, result.error
        booking = await booking_service.get_booking(db, booking_id)
        assert booking.approval_status == "declined"
        assert booking.decline_reason == "Fully booked"
        assert booking.individual_details.payment_status == "cancelled"
        assert sandbox.intents[booking.individual_details.payment_intent_id].status == "canceled"


class TestCancelBooking:
    async def test_full_refund_a_day_ahead(self, db, booking_service, sandbox, client, coach):
        booking_id = await _create_accepted(booking_service, sandbox, db, client, coach)

        result = await booking_service.cancel_booking(db, actor_for(client), booking_id, "Injured")

        assert result.success, result.error
        assert result.data["refund_amount_cents"] == 7301
        booking = await booking_service.get_booking(db, booking_id)
        assert booking.approval_status == "cancelled"
        assert booking.cancelled_by == client.id
        assert booking.refund_amount_cents == 7301
        assert booking.individual_details.payment_status == "refunded"

    async def test_half_refund_inside_a_day(self, db, booking_service, sandbox, client, coach):
        booking_id = await _create_accepted(booking_service, sandbox, db, client, coach)
        await _move_session(db, booking_id, utcnow() + timedelta(hours=18))

        result = await booking_service.cancel_booking(db, actor_for(client), booking_id)

        assert result.data["refund_amount_cents"] == 3651
        assert result.data["payment_status"] == "partially_refunded"

    async def test_no_refund_inside_twelve_hours(self, db, booking_service, sandbox, client, coach):
        booking_id = await _create_accepted(booking_service, sandbox, db, client, coach)
        await _move_session(db, booking_id, utcnow() + timedelta(hours=2))

        result = await booking_service.cancel_booking(db, actor_for(client), booking_id)

        assert result.data["refund_amount_cents"] == 0
        assert result.data["payment_status"] == "captured"
        assert sandbox.refunds == []

    async def test_cancel_after_goodwill_refund_returns_the_rest(
        self, db, booking_service, sandbox, client, coach, admin
    ):
        booking_id = await _create_accepted(booking_service, sandbox, db, client, coach)
        client_actor = actor_for(client)
        await booking_service.refund_booking(db, actor_for(admin), booking_id, 1000, "Late start")

        result = await booking_service.cancel_booking(db, client_actor, booking_id)

        assert result.success, result.error
        assert result.data["refund_amount_cents"] == 6301
        assert result.data["payment_status"] == "refunded"
        booking = await booking_service.get_booking(db, booking_id)
        assert booking.refund_amount_cents == 7301
        assert sandbox.refunded[booking.individual_details.payment_intent_id] == 7301

    async def test_half_tier_after_goodwill_refund(self, db, booking_service, sandbox, client, coach, admin):
        booking_id = await _create_accepted(booking_service, sandbox, db, client, coach)
        client_actor = actor_for(client)
        await booking_service.refund_booking(db, actor_for(admin), booking_id, 1000)
        await _move_session(db, booking_id, utcnow() + timedelta(hours=18))

        result = await booking_service.cancel_booking(db, client_actor, booking_id)

        assert result.data["refund_amount_cents"] == 3651
        assert result.data["payment_status"] == "partially_refunded"
        booking = await booking_service.get_booking(db, booking_id)
        assert booking.approval_status == "cancelled"
        assert booking.refund_amount_cents == 4651

    async def test_refund_failure_leaves_booking_accepted(self, db, booking_service, sandbox, client, coach):
        booking_id = await _create_accepted(booking_service, sandbox, db, client, coach)
        client_actor = actor_for(client)

        with patch.object(
            booking_service.gateway,
            "refund_payment",
            AsyncMock(side_effect=GatewayError("card network timeout")),
        ):
            result = await booking_service.cancel_booking(db, client_actor, booking_id)

        assert not result.success
        assert result.status_code == 502
        booking = await booking_service.get_booking(db, booking_id)
        assert booking.approval_status == "accepted"
        assert booking.refund_amount_cents in (None, 0)
        assert booking.individual_details.payment_status == "captured"
        assert sandbox.refunds == []

    async def test_unpaid_cancel_releases_hold(self, db, booking_service, sandbox, client, coach):
        created = await _create(booking_service, db, client, coach)

        result = await booking_service.cancel_booking(db, actor_for(coach), created.data["booking_id"])

        assert result.data["payment_status"] == "cancelled"
        assert sandbox.intents[created.data["payment_intent_id"]].status == "canceled"

    async def test_stranger_cannot_cancel(self, db, booking_service, make_user, client, coach):
        created = await _create(booking_service, db, client, coach)
        stranger = await make_user("client")

        result = await booking_service.cancel_booking(db, actor_for(stranger), created.data["booking_id"])

        assert result.status_code == 403

    async def test_cancel_twice_conflicts(self, db, booking_service, client, coach):
        created = await _create(booking_service, db, client, coach)
        await booking_service.cancel_booking(db, actor_for(client), created.data["booking_id"])

        result = await booking_service.cancel_booking(db, actor_for(client), created.data["booking_id"])

        assert result.status_code == 409
        assert result.error == "Booking is already cancelled"


class TestCompletionAndDisputes:
    async def test_complete_after_start(self, db, booking_service, sandbox, client, coach):
        booking_id = await _create_accepted(booking_service, sandbox, db, client, coach)
        await _move_session(db, booking_id, utcnow() - timedelta(hours=2))

        result = await booking_service.complete_booking(db, actor_for(coach), booking_id)

        assert result.success, result.error
        profile = await db.get(CoachProfile, coach.id, populate_existing=True)
        assert profile.lessons_completed == 1

    async def test_complete_before_start_rejected(self, db, booking_service, sandbox, client, coach):
        booking_id = await _create_accepted(booking_service, sandbox, db, client, coach)

        result = await booking_service.complete_booking(db, actor_for(coach), booking_id)

        assert result.status_code == 409

    async def test_auto_complete_respects_grace_period(self, db, booking_service, sandbox, client, coach):
        booking_id = await _create_accepted(booking_service, sandbox, db, client, coach)
        await _move_session(db, booking_id, utcnow() - timedelta(days=2))

        early = await booking_service.auto_complete_booking(db, booking_id)
        await _move_session(db, booking_id, utcnow() - timedelta(days=8))
        late = await booking_service.auto_complete_booking(db, booking_id)

        assert not early.success
        assert late.success, late.error

    async def test_auto_complete_stamps_client_confirmation(self, db, booking_service, sandbox, client, coach):
        booking_id = await _create_accepted(booking_service, sandbox, db, client, coach)
        await _move_session(db, booking_id, utcnow() - timedelta(days=8))

        result = await booking_service.auto_complete_booking(db, booking_id)

        assert result.success, result.error
        details = await db.get(IndividualBookingDetails, booking_id, populate_existing=True)
        assert details.client_confirmed_at is not None

    async def test_coach_completion_leaves_confirmation_unset(self, db, booking_service, sandbox, client, coach):
        booking_id = await _create_accepted(booking_service, sandbox, db, client, coach)
        await _move_session(db, booking_id, utcnow() - timedelta(hours=2))

        await booking_service.complete_booking(db, actor_for(coach), booking_id)

        details = await db.get(IndividualBookingDetails, booking_id, populate_existing=True)
        assert details.client_confirmed_at is None

    async def test_dispute_and_partial_resolution(self, db, booking_service, sandbox, client, coach, admin):
        booking_id = await _create_accepted(booking_service, sandbox, db, client, coach)
        await _move_session(db, booking_id, utcnow() - timedelta(hours=3))

        disputed = await booking_service.open_dispute(db, actor_for(client), booking_id, "Coach no-show")
        resolved = await booking_service.resolve_dispute(db, actor_for(admin), booking_id, 2000, "Partial refund")

        assert disputed.success, disputed.error
        assert resolved.success, resolved.error
        booking = await booking_service.get_booking(db, booking_id)
        assert booking.fulfillment_status == "completed"
        assert booking.refund_amount_cents == 2000
        assert booking.individual_details.payment_status == "partially_refunded"

    async def test_coach_cannot_dispute(self, db, booking_service, sandbox, client, coach):
        booking_id = await _create_accepted(booking_service, sandbox, db, client, coach)
        await _move_session(db, booking_id, utcnow() - timedelta(hours=3))

        result = await booking_service.open_dispute(db, actor_for(coach), booking_id, "x")

        assert result.status_code == 403

    async def test_admin_refund_of_remaining_amount(self, db, booking_service, sandbox, client, coach, admin):
        booking_id = await _create_accepted(booking_service, sandbox, db, client, coach)

        partial = await booking_service.refund_booking(db, actor_for(admin), booking_id, 1000, "Goodwill")
        rest = await booking_service.refund_booking(db, actor_for(admin), booking_id)
        extra = await booking_service.refund_booking(db, actor_for(admin), booking_id, 1)

        assert partial.data["payment_status"] == "partially_refunded"
        assert rest.data["refund_amount_cents"] == 6301
        assert rest.data["payment_status"] == "refunded"
        assert not extra.success

    async def test_refund_requires_admin(self, db, booking_service, sandbox, client, coach):
        booking_id = await _create_accepted(booking_service, sandbox, db, client, coach)

        result = await booking_service.refund_booking(db, actor_for(client), booking_id)

        assert result.status_code == 403


class TestPrivateGroupBooking:
    async def test_organizer_pays_for_whole_group(
        self, db, booking_service, sandbox, make_user, client, coach, group_tier
    ):
        friends = [await make_user("client") for _ in range(2)]
        start, end = session_window()

        result = await booking_service.create_private_group_booking(
            db, actor_for(client), coach.id, start, end, LOCATION, [f.id for f in friends]
        )

        assert result.success, result.error
        assert result.data["group_size"] == 3
        assert result.data["client_pays_cents"] == 12000
        booking = await booking_service.get_booking(db, result.data["booking_id"])
        details = booking.private_group_details
        assert details.current_participants == details.max_participants == 3
        assert len(booking.participants) == 3
        organizer = next(p for p in booking.participants if p.is_organizer)
        assert organizer.user_id == client.id
        assert organizer.amount_cents == 12000

    async def test_accept_captures_every_seat(
        self, db, booking_service, sandbox, make_user, client, coach, group_tier
    ):
        friend = await make_user("client")
        start, end = session_window()
        created = await booking_service.create_private_group_booking(
            db, actor_for(client), coach.id, start, end, LOCATION, [friend.id]
        )
        sandbox.confirm(created.data["payment_intent_id"])
        await booking_service.confirm_payment(db, actor_for(client), created.data["booking_id"])

        result = await booking_service.accept_booking(db, actor_for(coach), created.data["booking_id"])

        assert result.success, result.error
        booking = await booking_service.get_booking(db, created.data["booking_id"])
        assert booking.private_group_details.captured_participants == 2
        assert {p.status for p in booking.participants} == {"accepted"}

    async def test_group_size_outside_tiers(self, db, booking_service, make_user, client, coach, group_tier):
        friends = [await make_user("client") for _ in range(6)]
        start, end = session_window()

        result = await booking_service.create_private_group_booking(
            db, actor_for(client), coach.id, start, end, LOCATION, [f.id for f in friends]
        )

        assert not result.success
        assert "7 participants" in result.error

    async def test_unknown_participant(self, db, booking_service, client, coach, group_tier):
        start, end = session_window()

        result = await booking_service.create_private_group_booking(
            db, actor_for(client), coach.id, start, end, LOCATION, [uuid4()]
        )

        assert not result.success
        assert result.error.startswith("Unknown participants")


class TestScheduledTransitions:
    async def test_reminder_sent_once(self, db, booking_service, client, coach, notifier):
        created = await _create(booking_service, db, client, coach)

        first = await booking_service.send_payment_reminder(db, created.data["booking_id"], final=False)
        second = await booking_service.send_payment_reminder(db, created.data["booking_id"], final=False)

        assert first is True
        assert second is False
        assert notifier.names().count("notify_payment_reminder") == 1

    async def test_expire_cancels_overdue_booking(self, db, booking_service, sandbox, client, coach):
        created = await _create(booking_service, db, client, coach)
        await db.execute(
            update(IndividualBookingDetails)
            .where(IndividualBookingDetails.booking_id == created.data["booking_id"])
            .values(payment_due_at=utcnow() - timedelta(minutes=1))
        )
        await db.commit()

        outcome = await booking_service.expire_unpaid_booking(db, created.data["booking_id"])

        assert outcome == "expired"
        booking = await booking_service.get_booking(db, created.data["booking_id"])
        assert booking.approval_status == "cancelled"
        assert booking.individual_details.payment_status == "cancelled"
        assert sandbox.intents[created.data["payment_intent_id"]].status == "canceled"

    async def test_expire_finds_late_authorization(self, db, booking_service, sandbox, client, coach):
        created = await _create(booking_service, db, client, coach)
        sandbox.confirm(created.data["payment_intent_id"])
        await db.execute(
            update(IndividualBookingDetails)
            .where(IndividualBookingDetails.booking_id == created.data["booking_id"])
            .values(payment_due_at=utcnow() - timedelta(minutes=1))
        )
        await db.commit()

        outcome = await booking_service.expire_unpaid_booking(db, created.data["booking_id"])

        assert outcome == "authorized"
        booking = await booking_service.get_booking(db, created.data["booking_id"])
        assert booking.approval_status == "pending"
        assert booking.individual_details.payment_status == "authorized"

    async def test_expire_skips_booking_still_in_window(self, db, booking_service, client, coach):
        created = await _create(booking_service, db, client, coach)

        assert await booking_service.expire_unpaid_booking(db, created.data["booking_id"]) == "skipped"

    async def test_release_stale_lock(self, db, booking_service, client, coach):
        created = await _create(booking_service, db, client, coach)
        await db.execute(
            update(Booking)
            .where(Booking.id == created.data["booking_id"])
            .values(locked_until=utcnow() - timedelta(minutes=1))
        )
        await db.commit()

        assert await booking_service.release_stale_lock(db, created.data["booking_id"]) is True
        assert await booking_service.release_stale_lock(db, created.data["booking_id"]) is False


async def test_individual_booking_has_no_participant_rows(db, booking_service, client, coach):
    created = await _create(booking_service, db, client, coach)

    rows = (
        await db.execute(select(BookingParticipant).where(BookingParticipant.booking_id == created.data["booking_id"]))
    ).scalars().all()

    assert rows == []
