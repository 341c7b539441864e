"""Group lesson service.

Public lessons are hosted by a coach; every participant opens their own hold,
which stays on the platform and is captured when the coach accepts them. The
coach is paid by a single transfer when the lesson completes.

Seat counters move only through guarded UPDATEs:
    current = authorized + captured, and current never exceeds max.
"""

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import (
    CapacityError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    PaymentAlreadyCapturedError,
    StateConflictError,
    ValidationError,
)
from app.core.permissions import Actor, UserRole, require_owner, require_role
from app.core.results import OperationResult, run_operation
from app.database import as_utc, utcnow
from app.domain.booking_state import (
    ApprovalStatus,
    BookingType,
    CapacityStatus,
    FulfillmentStatus,
    assert_capacity_transition,
    can_cancel,
)
from app.domain.payment_state import (
    IntentStatus,
    assert_participant_payment_transition,
    assert_participant_transition,
)
from app.models.booking import (
    Booking,
    BookingParticipant,
    PrivateGroupBookingDetails,
    PublicGroupLessonDetails,
)
from app.models.user import CoachProfile
from app.services.audit_service import FieldChange
from app.services.booking_base import BookingAggregate

logger = logging.getLogger(__name__)

ACTIVE_PARTICIPANT_STATUSES = ("awaiting_coach", "accepted")


class GroupLessonService(BookingAggregate):
    """Service for public group lessons and whole-group cancellation."""

    # ==================== LESSONS ====================

    async def create_public_lesson(
        self,
        db: AsyncSession,
        actor: Actor,
        scheduled_start_at: datetime,
        scheduled_end_at: datetime,
        location: dict[str, Any],
        title: str,
        price_per_person_cents: int,
        max_participants: int,
        min_participants: int = 1,
        description: str | None = None,
    ) -> OperationResult:
        """Publish a lesson that clients can join."""
        return await run_operation(
            db,
            "create_public_lesson",
            actor.id,
            lambda: self._create_public_lesson(
                db,
                actor,
                scheduled_start_at,
                scheduled_end_at,
                location,
                title,
                price_per_person_cents,
                max_participants,
                min_participants,
                description,
            ),
        )

    async def _create_public_lesson(
        self,
        db: AsyncSession,
        actor: Actor,
        start: datetime,
        end: datetime,
        location: dict[str, Any],
        title: str,
        price_per_person_cents: int,
        max_participants: int,
        min_participants: int,
        description: str | None,
    ) -> OperationResult:
        require_role(actor, UserRole.COACH)
        if price_per_person_cents <= 0:
            raise ValidationError("Price per person must be positive")
        if min_participants < 1 or max_participants < min_participants:
            raise ValidationError("Participant limits must satisfy 1 <= min <= max")
        now = utcnow()
        duration = self._validate_window(start, end, now)
        await self._get_bookable_coach(db, actor.id)
        await self._assert_slot_available(db, actor.id, start, end, now)

        booking = Booking(
            coach_id=actor.id,
            booking_type=BookingType.PUBLIC_GROUP.value,
            scheduled_start_at=start,
            scheduled_end_at=end,
            duration_minutes=duration,
            location=location,
            approval_status=ApprovalStatus.ACCEPTED.value,
            fulfillment_status=FulfillmentStatus.SCHEDULED.value,
            public_group_details=PublicGroupLessonDetails(
                title=title,
                description=description,
                price_per_person_cents=price_per_person_cents,
                min_participants=min_participants,
                max_participants=max_participants,
                current_participants=0,
                authorized_participants=0,
                captured_participants=0,
                capacity_status=CapacityStatus.OPEN.value,
            ),
        )
        db.add(booking)
        await db.commit()

        await self.audit.record_transitions(
            db,
            booking.id,
            [
                FieldChange("approval_status", None, ApprovalStatus.ACCEPTED.value),
                FieldChange("capacity_status", None, CapacityStatus.OPEN.value),
            ],
            changed_by=actor.id,
            reason="Lesson published",
        )
        logger.info(f"Public lesson {booking.id} published by coach {actor.id}")
        return OperationResult.ok(
            booking_id=booking.id,
            capacity_status=CapacityStatus.OPEN.value,
            max_participants=max_participants,
        )

    # ==================== PARTICIPANTS ====================

    async def join_lesson(self, db: AsyncSession, actor: Actor, booking_id: UUID) -> OperationResult:
        """Request a seat, opening a hold for the seat price."""
        return await run_operation(
            db, "join_lesson", booking_id, lambda: self._join_lesson(db, actor, booking_id)
        )

    async def _join_lesson(self, db: AsyncSession, actor: Actor, booking_id: UUID) -> OperationResult:
        require_role(actor, UserRole.CLIENT)
        booking = await self._get_public_lesson(db, booking_id)
        lesson = booking.public_group_details
        if booking.coach_id == actor.id:
            raise ValidationError("You cannot join your own lesson")
        if booking.approval_status != ApprovalStatus.ACCEPTED or (
            booking.fulfillment_status != FulfillmentStatus.SCHEDULED
        ):
            raise StateConflictError("This lesson is no longer taking participants")
        now = utcnow()
        if self._session_started(booking, now):
            raise StateConflictError("This lesson has already started")
        if lesson.capacity_status != CapacityStatus.OPEN:
            raise CapacityError("This lesson is not open for registration")
        if lesson.captured_participants >= lesson.max_participants:
            raise CapacityError()
        if any(p.user_id == actor.id for p in booking.participants):
            raise StateConflictError("You have already requested to join this lesson")

        participant = BookingParticipant(
            id=uuid4(),
            booking_id=booking.id,
            user_id=actor.id,
            is_organizer=False,
            amount_cents=lesson.price_per_person_cents,
            expires_at=now + timedelta(hours=settings.participant_hold_hours),
        )

        # No destination: funds stay on the platform until the lesson pays out
        intent = await self.gateway.open_hold(
            lesson.price_per_person_cents,
            None,
            {
                "booking_id": str(booking.id),
                "booking_type": BookingType.PUBLIC_GROUP.value,
                "participant_id": str(participant.id),
                "coach_id": str(booking.coach_id),
                "user_id": str(actor.id),
            },
        )
        participant.payment_intent_id = intent.id
        db.add(participant)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            await self._release_quietly(intent.id)
            raise StateConflictError("You have already requested to join this lesson")
        except Exception:
            await db.rollback()
            await self._release_quietly(intent.id)
            raise

        await self.audit.record_payment_event(
            db, booking.id, intent.id, intent.amount, "created", participant_id=participant.id
        )
        await self.audit.record_transitions(
            db,
            booking.id,
            [
                FieldChange("participant_status", None, "awaiting_coach"),
                FieldChange("participant_payment_status", None, "pending"),
            ],
            changed_by=actor.id,
            reason="Joined lesson",
            participant_id=participant.id,
        )
        user = await self._get_user(db, actor.id)
        await self._send(
            f"participant request {participant.id}",
            lambda: self.notifier.notify_participant_request(booking.coach.email, user.name, booking, lesson.title),
        )
        logger.info(f"User {actor.id} requested a seat in lesson {booking.id}")
        return OperationResult.ok(
            booking_id=booking.id,
            participant_id=participant.id,
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
            amount_cents=intent.amount,
            expires_at=participant.expires_at,
        )

    async def _release_quietly(self, intent_id: str) -> None:
        try:
            await self.gateway.release_hold(intent_id)
        except GatewayError:
            logger.exception(f"Failed to release hold {intent_id} for a seat that was not saved")

    async def confirm_participant_payment(
        self, db: AsyncSession, actor: Actor, booking_id: UUID, participant_id: UUID
    ) -> OperationResult:
        """Record the participant's authorized hold and take their seat."""
        return await run_operation(
            db,
            "confirm_participant_payment",
            participant_id,
            lambda: self._confirm_participant_payment(db, actor, booking_id, participant_id),
        )

    async def _confirm_participant_payment(
        self, db: AsyncSession, actor: Actor, booking_id: UUID, participant_id: UUID
    ) -> OperationResult:
        booking = await self._get_public_lesson(db, booking_id)
        participant = self._find_participant(booking, participant_id)
        require_owner(actor, participant.user_id, "Only the participant can confirm their payment")
        if participant.payment_status == "authorized":
            return OperationResult.ok(participant_id=participant.id, payment_status="authorized")
        if participant.status != "awaiting_coach" or participant.payment_status != "pending":
            raise StateConflictError(f"Participant payment is {participant.payment_status}")
        now = utcnow()
        expires = as_utc(participant.expires_at)
        if expires is not None and expires <= now:
            raise StateConflictError("This seat request has expired")

        intent = await self.gateway.read_back(participant.payment_intent_id)
        if intent.status != IntentStatus.REQUIRES_CAPTURE:
            raise InvalidStateError(
                f"Payment not completed - status is '{intent.status}'",
                intent_status=intent.status,
            )

        if not await self._take_seat(db, booking.id, authorized=True):
            await self.gateway.release_hold(participant.payment_intent_id)
            await self._transition_participant(
                db,
                participant.id,
                {"status": "awaiting_coach", "payment_status": "pending"},
                {"status": "cancelled", "payment_status": "cancelled", "cancelled_at": now},
            )
            await db.commit()
            await self.audit.record_payment_event(
                db, booking.id, intent.id, intent.amount, "cancelled", participant_id=participant.id
            )
            raise CapacityError("This lesson filled up before your payment completed")

        await self._transition_participant(
            db,
            participant.id,
            {"status": "awaiting_coach", "payment_status": "pending"},
            {"payment_status": "authorized", "authorized_at": now},
        )
        capacity_change = await self._sync_capacity(db, booking.id)
        await db.commit()

        await self.audit.record_payment_event(
            db, booking.id, intent.id, intent.amount, "authorized", participant_id=participant.id
        )
        await self._record_participant_changes(
            db, booking.id, participant.id, [FieldChange("participant_payment_status", "pending", "authorized")],
            actor.id, "Participant completed payment", capacity_change,
        )
        return OperationResult.ok(participant_id=participant.id, payment_status="authorized")

    async def accept_participant(
        self, db: AsyncSession, actor: Actor, booking_id: UUID, participant_id: UUID
    ) -> OperationResult:
        """Accept a participant, capturing their hold."""
        return await run_operation(
            db,
            "accept_participant",
            participant_id,
            lambda: self._accept_participant(db, actor, booking_id, participant_id),
        )

    async def _accept_participant(
        self, db: AsyncSession, actor: Actor, booking_id: UUID, participant_id: UUID
    ) -> OperationResult:
        booking = await self._get_public_lesson(db, booking_id)
        require_owner(actor, booking.coach_id, "Only the lesson's coach can accept participants")
        lesson = booking.public_group_details
        participant = self._find_participant(booking, participant_id)
        if booking.approval_status != ApprovalStatus.ACCEPTED:
            raise StateConflictError(f"Lesson is {booking.approval_status}")
        if participant.payment_status == "captured":
            raise StateConflictError("Participant has already been accepted")
        assert_participant_transition(participant.status, "accepted")
        assert_participant_payment_transition(participant.payment_status, "captured")
        previous_payment = participant.payment_status
        if previous_payment == "pending" and lesson.current_participants >= lesson.max_participants:
            raise CapacityError()

        intent = await self.gateway.capture_hold(participant.payment_intent_id)
        now = utcnow()

        try:
            if previous_payment == "authorized":
                moved = await self._guarded_update(
                    db,
                    PublicGroupLessonDetails,
                    [
                        PublicGroupLessonDetails.booking_id == booking.id,
                        PublicGroupLessonDetails.authorized_participants > 0,
                    ],
                    {
                        "authorized_participants": PublicGroupLessonDetails.authorized_participants - 1,
                        "captured_participants": PublicGroupLessonDetails.captured_participants + 1,
                    },
                )
                if moved != 1:
                    raise StateConflictError("Lesson seat counters changed concurrently")
            elif not await self._take_seat(db, booking.id, authorized=False):
                raise CapacityError()
            await self._transition_participant(
                db,
                participant.id,
                {"status": "awaiting_coach", "payment_status": previous_payment},
                {"status": "accepted", "payment_status": "captured", "captured_at": now},
            )
            capacity_change = await self._sync_capacity(db, booking.id)
            await db.commit()
        except (StateConflictError, CapacityError):
            await db.rollback()
            await self._refund_after_lost_race(intent.id)
            raise

        await self.audit.record_payment_event(
            db, booking.id, intent.id, intent.amount, "captured", participant_id=participant.id
        )
        await self._record_participant_changes(
            db,
            booking.id,
            participant.id,
            [
                FieldChange("participant_status", "awaiting_coach", "accepted"),
                FieldChange("participant_payment_status", previous_payment, "captured"),
            ],
            actor.id,
            "Coach accepted participant",
            capacity_change,
        )
        await self._send(
            f"participant accepted {participant.id}",
            lambda: self.notifier.notify_participant_accepted(participant.user.email, booking, lesson.title),
        )
        logger.info(f"Participant {participant.id} accepted into lesson {booking.id}")
        return OperationResult.ok(
            participant_id=participant.id, status="accepted", payment_status="captured"
        )

    async def _refund_after_lost_race(self, intent_id: str) -> None:
        try:
            await self.gateway.refund_payment(intent_id)
            logger.warning(f"Refunded seat capture {intent_id} after a concurrent lesson change")
        except GatewayError:
            logger.exception(f"Captured seat {intent_id} but could not refund it after a concurrent change")

    async def decline_participant(
        self,
        db: AsyncSession,
        actor: Actor,
        booking_id: UUID,
        participant_id: UUID,
        reason: str | None = None,
    ) -> OperationResult:
        """Decline a participant, releasing their hold."""
        return await run_operation(
            db,
            "decline_participant",
            participant_id,
            lambda: self._decline_participant(db, actor, booking_id, participant_id, reason),
        )

    async def _decline_participant(
        self,
        db: AsyncSession,
        actor: Actor,
        booking_id: UUID,
        participant_id: UUID,
        reason: str | None,
    ) -> OperationResult:
        booking = await self._get_public_lesson(db, booking_id)
        require_owner(actor, booking.coach_id, "Only the lesson's coach can decline participants")
        participant = self._find_participant(booking, participant_id)
        if participant.payment_status == "captured":
            raise StateConflictError(
                "Participant payment has been captured. Please use the refund feature instead of declining."
            )
        assert_participant_transition(participant.status, "declined")
        previous_payment = participant.payment_status
        now = utcnow()

        if participant.payment_intent_id:
            try:
                await self.gateway.release_hold(participant.payment_intent_id)
            except PaymentAlreadyCapturedError:
                raise PaymentAlreadyCapturedError(
                    "Participant payment has been processed. Please use the refund feature instead of declining."
                )

        await self._transition_participant(
            db,
            participant.id,
            {"status": "awaiting_coach", "payment_status": previous_payment},
            {"status": "declined", "payment_status": "cancelled", "cancelled_at": now},
        )
        capacity_change = None
        if previous_payment == "authorized":
            await self._free_seat(db, booking.id, "authorized")
            capacity_change = await self._sync_capacity(db, booking.id)
        await db.commit()

        await self._after_release(db, booking, participant, previous_payment, "declined", actor.id,
                                  reason or "Coach declined participant", capacity_change)
        await self._send(
            f"participant declined {participant.id}",
            lambda: self.notifier.notify_participant_declined(
                participant.user.email, booking, booking.public_group_details.title
            ),
        )
        return OperationResult.ok(participant_id=participant.id, status="declined", payment_status="cancelled")

    async def leave_lesson(self, db: AsyncSession, actor: Actor, booking_id: UUID) -> OperationResult:
        """Give up a seat before the lesson starts, refunding or releasing the payment."""
        return await run_operation(
            db, "leave_lesson", booking_id, lambda: self._leave_lesson(db, actor, booking_id)
        )

    async def _leave_lesson(self, db: AsyncSession, actor: Actor, booking_id: UUID) -> OperationResult:
        booking = await self._get_public_lesson(db, booking_id)
        participant = next(
            (
                p
                for p in booking.participants
                if p.user_id == actor.id and p.status in ACTIVE_PARTICIPANT_STATUSES
            ),
            None,
        )
        if participant is None:
            raise NotFoundError("Participation")
        if self._session_started(booking, utcnow()):
            raise StateConflictError("Cannot leave a lesson that has already started")
        previous_payment = participant.payment_status

        refund_cents = 0
        if previous_payment == "captured":
            refund = await self.gateway.refund_payment(participant.payment_intent_id)
            refund_cents = refund.amount
        elif participant.payment_intent_id:
            try:
                await self.gateway.release_hold(participant.payment_intent_id)
            except PaymentAlreadyCapturedError:
                refund = await self.gateway.refund_payment(participant.payment_intent_id)
                refund_cents = refund.amount

        result = await db.execute(
            delete(BookingParticipant)
            .where(
                BookingParticipant.id == participant.id,
                BookingParticipant.payment_status == previous_payment,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StateConflictError("Participant was modified concurrently. Please refresh and try again.")
        capacity_change = None
        if previous_payment in ("authorized", "captured"):
            await self._free_seat(db, booking.id, previous_payment)
            capacity_change = await self._sync_capacity(db, booking.id)
        await db.commit()

        new_payment = "refunded" if refund_cents else "cancelled"
        if participant.payment_intent_id:
            await self.audit.record_payment_event(
                db,
                booking.id,
                participant.payment_intent_id,
                participant.amount_cents or 0,
                new_payment,
                participant_id=participant.id,
                refunded_amount_cents=refund_cents or None,
            )
        await self._record_participant_changes(
            db,
            booking.id,
            participant.id,
            [
                FieldChange("participant_status", participant.status, "cancelled"),
                FieldChange("participant_payment_status", previous_payment, new_payment),
            ],
            actor.id,
            "Participant left lesson",
            capacity_change,
        )
        logger.info(f"User {actor.id} left lesson {booking.id}, refund {refund_cents} cents")
        return OperationResult.ok(booking_id=booking.id, refund_amount_cents=refund_cents)

    async def expire_participant_hold(self, db: AsyncSession, participant_id: UUID) -> bool:
        """Cancel a seat request the coach did not answer in time.

        Returns:
            True if the hold was expired, False if it no longer qualified
        """
        participant = await db.get(BookingParticipant, participant_id, populate_existing=True)
        if participant is None:
            return False
        now = utcnow()
        expires = as_utc(participant.expires_at)
        if (
            participant.status != "awaiting_coach"
            or participant.payment_status not in ("pending", "authorized")
            or expires is None
            or expires > now
        ):
            return False
        booking = await self._get_public_lesson(db, participant.booking_id)
        previous_payment = participant.payment_status

        if participant.payment_intent_id:
            await self.gateway.release_hold(participant.payment_intent_id)

        await self._transition_participant(
            db,
            participant.id,
            {"status": "awaiting_coach", "payment_status": previous_payment},
            {"status": "cancelled", "payment_status": "cancelled", "cancelled_at": now},
        )
        capacity_change = None
        if previous_payment == "authorized":
            await self._free_seat(db, booking.id, "authorized")
            capacity_change = await self._sync_capacity(db, booking.id)
        await db.commit()

        await self._after_release(db, booking, participant, previous_payment, "cancelled", None,
                                  "Seat request expired", capacity_change)
        await self._send(
            f"hold expired {participant.id}",
            lambda: self.notifier.notify_hold_expired(
                participant.user.email, booking, booking.public_group_details.title
            ),
        )
        return True

    async def _after_release(
        self,
        db: AsyncSession,
        booking: Booking,
        participant: BookingParticipant,
        previous_payment: str,
        new_status: str,
        changed_by: UUID | None,
        reason: str,
        capacity_change: FieldChange | None,
    ) -> None:
        if participant.payment_intent_id:
            await self.audit.record_payment_event(
                db,
                booking.id,
                participant.payment_intent_id,
                participant.amount_cents or 0,
                "cancelled",
                participant_id=participant.id,
            )
        await self._record_participant_changes(
            db,
            booking.id,
            participant.id,
            [
                FieldChange("participant_status", "awaiting_coach", new_status),
                FieldChange("participant_payment_status", previous_payment, "cancelled"),
            ],
            changed_by,
            reason,
            capacity_change,
        )

    # ==================== WHOLE-LESSON OPERATIONS ====================

    async def cancel_lesson(
        self, db: AsyncSession, actor: Actor, booking_id: UUID, reason: str | None = None
    ) -> OperationResult:
        """Cancel a whole group booking as its coach, refunding everyone in full."""
        return await run_operation(
            db, "cancel_lesson", booking_id, lambda: self._cancel_lesson(db, actor, booking_id, reason)
        )

    async def _cancel_lesson(
        self, db: AsyncSession, actor: Actor, booking_id: UUID, reason: str | None
    ) -> OperationResult:
        booking = await self.get_booking(db, booking_id)
        if booking.booking_type == BookingType.INDIVIDUAL:
            raise StateConflictError("Individual bookings are cancelled through the booking endpoint")
        if not actor.is_admin:
            require_owner(actor, booking.coach_id, "Only the lesson's coach can cancel it")
        allowed, error = can_cancel(booking.approval_status, booking.fulfillment_status)
        if not allowed:
            raise StateConflictError(error)

        if booking.booking_type == BookingType.PRIVATE_GROUP:
            return await self._cancel_private_group(db, actor, booking, reason)
        return await self._cancel_public_lesson(db, actor, booking, reason)

    async def _cancel_public_lesson(
        self, db: AsyncSession, actor: Actor, booking: Booking, reason: str | None
    ) -> OperationResult:
        now = utcnow()
        previous_capacity = booking.public_group_details.capacity_status
        assert_capacity_transition(previous_capacity, CapacityStatus.CANCELLED.value)
        refunded_total = 0
        failed: list[UUID] = []
        notified: list[tuple[BookingParticipant, int]] = []

        for participant in list(booking.participants):
            if participant.status not in ACTIVE_PARTICIPANT_STATUSES:
                continue
            previous_payment = participant.payment_status
            try:
                if previous_payment == "captured":
                    refund = await self.gateway.refund_payment(participant.payment_intent_id)
                    refund_cents, new_payment = refund.amount, "refunded"
                else:
                    if participant.payment_intent_id:
                        await self.gateway.release_hold(participant.payment_intent_id)
                    refund_cents, new_payment = 0, "cancelled"
            except GatewayError:
                logger.exception(
                    f"Could not return payment for participant {participant.id} of lesson {booking.id}"
                )
                failed.append(participant.id)
                continue

            await self._transition_participant(
                db,
                participant.id,
                {"status": participant.status, "payment_status": previous_payment},
                {
                    "status": "cancelled",
                    "payment_status": new_payment,
                    "cancelled_at": now,
                    "refunded_at": now if refund_cents else None,
                },
            )
            if previous_payment in ("authorized", "captured"):
                await self._free_seat(db, booking.id, previous_payment)
            await db.commit()

            refunded_total += refund_cents
            notified.append((participant, refund_cents))
            if participant.payment_intent_id:
                await self.audit.record_payment_event(
                    db,
                    booking.id,
                    participant.payment_intent_id,
                    participant.amount_cents or 0,
                    new_payment,
                    participant_id=participant.id,
                    refunded_amount_cents=refund_cents or None,
                )
            await self.audit.record_transitions(
                db,
                booking.id,
                [
                    FieldChange("participant_status", participant.status, "cancelled"),
                    FieldChange("participant_payment_status", previous_payment, new_payment),
                ],
                changed_by=actor.id,
                reason="Lesson cancelled by coach",
                participant_id=participant.id,
            )

        await self._transition_booking(
            db,
            booking.id,
            {"approval_status": booking.approval_status},
            {
                "approval_status": ApprovalStatus.CANCELLED.value,
                "cancelled_by": actor.id,
                "cancelled_at": now,
                "cancellation_reason": reason,
                "refund_amount_cents": refunded_total,
                "refund_processed_at": now if refunded_total else None,
            },
        )
        await self._guarded_update(
            db,
            PublicGroupLessonDetails,
            [PublicGroupLessonDetails.booking_id == booking.id],
            {"capacity_status": CapacityStatus.CANCELLED.value},
        )
        await db.commit()

        await self.audit.record_transitions(
            db,
            booking.id,
            [
                FieldChange("approval_status", booking.approval_status, ApprovalStatus.CANCELLED.value),
                FieldChange("capacity_status", previous_capacity, CapacityStatus.CANCELLED.value),
            ],
            changed_by=actor.id,
            reason=reason or "Lesson cancelled by coach",
        )
        for participant, refund_cents in notified:
            await self._send(
                f"lesson cancelled {booking.id} to {participant.user_id}",
                lambda: self.notifier.notify_lesson_cancelled(participant.user.email, booking, refund_cents),
            )
        if failed:
            logger.error(f"Lesson {booking.id} cancelled with {len(failed)} payments needing manual follow-up")
        return OperationResult.ok(
            booking_id=booking.id,
            approval_status="cancelled",
            refunded_participants=len(notified),
            refund_amount_cents=refunded_total,
            failed_participants=failed,
        )

    async def _cancel_private_group(
        self, db: AsyncSession, actor: Actor, booking: Booking, reason: str | None
    ) -> OperationResult:
        now = utcnow()
        details = booking.private_group_details
        previous_approval = booking.approval_status
        previous_payment = details.payment_status

        # The primary charge must come back before anything is persisted
        refund_cents = 0
        if previous_payment == "captured":
            refund = await self.gateway.refund_payment(
                details.payment_intent_id, reverse_transfer=True
            )
            refund_cents = refund.amount
            new_payment = "refunded"
        elif previous_payment in ("awaiting_client_payment", "authorized"):
            if details.payment_intent_id:
                await self.gateway.release_hold(details.payment_intent_id)
            new_payment = "cancelled"
        else:
            new_payment = previous_payment

        await self._transition_booking(
            db,
            booking.id,
            {"approval_status": previous_approval},
            {
                "approval_status": ApprovalStatus.CANCELLED.value,
                "cancelled_by": actor.id,
                "cancelled_at": now,
                "cancellation_reason": reason,
                "refund_amount_cents": (booking.refund_amount_cents or 0) + refund_cents,
                "refund_processed_at": now if refund_cents else booking.refund_processed_at,
                "locked_until": None,
            },
        )
        if new_payment != previous_payment:
            await self._transition_details(
                db,
                PrivateGroupBookingDetails,
                booking.id,
                {"payment_status": previous_payment},
                {"payment_status": new_payment},
            )
        await self._guarded_update(
            db,
            BookingParticipant,
            [
                BookingParticipant.booking_id == booking.id,
                BookingParticipant.status.in_(ACTIVE_PARTICIPANT_STATUSES),
            ],
            {
                "status": "cancelled",
                "payment_status": "refunded" if refund_cents else "cancelled",
                "cancelled_at": now,
                "refunded_at": now if refund_cents else None,
            },
        )
        await db.commit()

        if details.payment_intent_id and new_payment != previous_payment:
            await self.audit.record_payment_event(
                db,
                booking.id,
                details.payment_intent_id,
                details.total_gross_cents,
                "refunded" if refund_cents else "cancelled",
                refunded_amount_cents=refund_cents or None,
            )
        await self.audit.record_transitions(
            db,
            booking.id,
            [
                FieldChange("approval_status", previous_approval, ApprovalStatus.CANCELLED.value),
                FieldChange("payment_status", previous_payment, new_payment),
            ],
            changed_by=actor.id,
            reason=reason or "Group session cancelled by coach",
        )
        for participant in booking.participants:
            await self._send(
                f"lesson cancelled {booking.id} to {participant.user_id}",
                lambda: self.notifier.notify_lesson_cancelled(
                    participant.user.email, booking, refund_cents if participant.is_organizer else 0
                ),
            )
        logger.info(f"Private group {booking.id} cancelled by {actor.id}, refund {refund_cents} cents")
        return OperationResult.ok(
            booking_id=booking.id,
            approval_status="cancelled",
            payment_status=new_payment,
            refund_amount_cents=refund_cents,
            failed_participants=[],
        )

    async def complete_lesson(self, db: AsyncSession, actor: Actor, booking_id: UUID) -> OperationResult:
        """Mark a public lesson delivered and transfer the coach's payout."""
        return await run_operation(
            db, "complete_lesson", booking_id, lambda: self._complete_lesson(db, actor, booking_id)
        )

    async def auto_complete_lesson(self, db: AsyncSession, booking_id: UUID) -> OperationResult:
        """Complete a public lesson left open past the grace period."""
        return await run_operation(
            db, "auto_complete_lesson", booking_id, lambda: self._complete_lesson(db, None, booking_id)
        )

    async def _complete_lesson(
        self, db: AsyncSession, actor: Actor | None, booking_id: UUID
    ) -> OperationResult:
        booking = await self._get_public_lesson(db, booking_id)
        lesson = booking.public_group_details
        now = utcnow()
        if actor is not None:
            if not actor.is_admin:
                require_owner(actor, booking.coach_id, "Only the lesson's coach can complete it")
            if not self._session_started(booking, now):
                raise StateConflictError("Cannot complete a lesson that has not started")
        elif as_utc(booking.scheduled_end_at) + timedelta(days=settings.auto_complete_after_days) > now:
            raise StateConflictError("Lesson is still inside the completion grace period")
        if booking.approval_status != ApprovalStatus.ACCEPTED:
            raise StateConflictError(f"Cannot complete a {booking.approval_status} lesson")
        if booking.fulfillment_status != FulfillmentStatus.SCHEDULED:
            raise StateConflictError(f"Lesson is already {booking.fulfillment_status}")
        assert_capacity_transition(lesson.capacity_status, CapacityStatus.CLOSED.value)

        paid = [p for p in booking.participants if p.payment_status == "captured"]
        gross = sum(p.amount_cents or 0 for p in paid)
        transfer_id = None
        payout_cents = 0
        if gross > 0:
            coach = await self._get_coach_profile(db, booking.coach_id)
            if not coach.payout_account_id:
                raise StateConflictError("Coach has no payout account to receive lesson earnings")
            try:
                split = self.pricing.calculate_coach_earnings(gross, coach.user.platform_fee_percent)
            except ValueError as e:
                raise ValidationError(str(e))
            payout_cents = split.coach_payout_cents
            if payout_cents > 0:
                transfer = await self.gateway.transfer_payout(
                    payout_cents,
                    coach.payout_account_id,
                    {"booking_id": str(booking.id), "participants": str(len(paid))},
                )
                transfer_id = transfer.transfer_id

        try:
            await self._transition_booking(
                db,
                booking.id,
                {"fulfillment_status": FulfillmentStatus.SCHEDULED.value},
                {"fulfillment_status": FulfillmentStatus.COMPLETED.value, "completed_at": now},
            )
        except StateConflictError:
            if transfer_id:
                logger.error(f"Transfer {transfer_id} sent for lesson {booking.id} that changed concurrently")
            raise
        await self._guarded_update(
            db,
            PublicGroupLessonDetails,
            [PublicGroupLessonDetails.booking_id == booking.id],
            {
                "capacity_status": CapacityStatus.CLOSED.value,
                "coach_payout_cents": payout_cents,
                "transfer_id": transfer_id,
            },
        )
        await self._guarded_update(
            db,
            CoachProfile,
            [CoachProfile.user_id == booking.coach_id],
            {"lessons_completed": CoachProfile.lessons_completed + 1},
        )
        await db.commit()

        await self.audit.record_transitions(
            db,
            booking.id,
            [
                FieldChange("fulfillment_status", FulfillmentStatus.SCHEDULED.value, FulfillmentStatus.COMPLETED.value),
                FieldChange("capacity_status", lesson.capacity_status, CapacityStatus.CLOSED.value),
            ],
            changed_by=actor.id if actor else None,
            reason="Lesson completed" if actor else "Auto-completed after grace period",
        )
        for participant in paid:
            await self._send(
                f"lesson completed {booking.id} to {participant.user_id}",
                lambda: self.notifier.notify_booking_completed(participant.user.email, booking),
            )
        logger.info(f"Lesson {booking.id} completed; transferred {payout_cents} cents ({transfer_id})")
        return OperationResult.ok(
            booking_id=booking.id,
            fulfillment_status="completed",
            coach_payout_cents=payout_cents,
            transfer_id=transfer_id,
        )

    # ==================== SEAT COUNTERS ====================

    async def _take_seat(self, db: AsyncSession, booking_id: UUID, authorized: bool) -> bool:
        """Claim a seat if one is free; ``authorized`` picks which counter holds it."""
        counter = "authorized_participants" if authorized else "captured_participants"
        taken = await self._guarded_update(
            db,
            PublicGroupLessonDetails,
            [
                PublicGroupLessonDetails.booking_id == booking_id,
                PublicGroupLessonDetails.current_participants < PublicGroupLessonDetails.max_participants,
            ],
            {
                "current_participants": PublicGroupLessonDetails.current_participants + 1,
                counter: getattr(PublicGroupLessonDetails, counter) + 1,
            },
        )
        return taken == 1

    async def _free_seat(self, db: AsyncSession, booking_id: UUID, payment_status: str) -> None:
        counter = "captured_participants" if payment_status == "captured" else "authorized_participants"
        column = getattr(PublicGroupLessonDetails, counter)
        freed = await self._guarded_update(
            db,
            PublicGroupLessonDetails,
            [
                PublicGroupLessonDetails.booking_id == booking_id,
                PublicGroupLessonDetails.current_participants > 0,
                column > 0,
            ],
            {
                "current_participants": PublicGroupLessonDetails.current_participants - 1,
                counter: column - 1,
            },
        )
        if freed != 1:
            logger.error(f"Seat counter {counter} already at zero for lesson {booking_id}")

    async def _sync_capacity(self, db: AsyncSession, booking_id: UUID) -> FieldChange | None:
        """Flip open/full to match the seat count; returns the change made, if any."""
        filled = await self._guarded_update(
            db,
            PublicGroupLessonDetails,
            [
                PublicGroupLessonDetails.booking_id == booking_id,
                PublicGroupLessonDetails.capacity_status == CapacityStatus.OPEN.value,
                PublicGroupLessonDetails.current_participants >= PublicGroupLessonDetails.max_participants,
            ],
            {"capacity_status": CapacityStatus.FULL.value},
        )
        if filled:
            return FieldChange("capacity_status", CapacityStatus.OPEN.value, CapacityStatus.FULL.value)
        reopened = await self._guarded_update(
            db,
            PublicGroupLessonDetails,
            [
                PublicGroupLessonDetails.booking_id == booking_id,
                PublicGroupLessonDetails.capacity_status == CapacityStatus.FULL.value,
                PublicGroupLessonDetails.current_participants < PublicGroupLessonDetails.max_participants,
            ],
            {"capacity_status": CapacityStatus.OPEN.value},
        )
        if reopened:
            return FieldChange("capacity_status", CapacityStatus.FULL.value, CapacityStatus.OPEN.value)
        return None

    async def _record_participant_changes(
        self,
        db: AsyncSession,
        booking_id: UUID,
        participant_id: UUID,
        changes: list[FieldChange],
        changed_by: UUID | None,
        reason: str,
        capacity_change: FieldChange | None,
    ) -> None:
        await self.audit.record_transitions(
            db, booking_id, changes, changed_by=changed_by, reason=reason, participant_id=participant_id
        )
        if capacity_change is not None:
            await self.audit.record_transitions(
                db, booking_id, [capacity_change], changed_by=changed_by, reason=reason
            )

    # ==================== LOADING ====================

    async def _get_public_lesson(self, db: AsyncSession, booking_id: UUID) -> Booking:
        booking = await self.get_booking(db, booking_id)
        if booking.booking_type != BookingType.PUBLIC_GROUP:
            raise StateConflictError("Only public group lessons take individual participants")
        return booking

    def _find_participant(self, booking: Booking, participant_id: UUID) -> BookingParticipant:
        for participant in booking.participants:
            if participant.id == participant_id:
                return participant
        raise NotFoundError("Participant", str(participant_id))


# Singleton instance
group_lesson_service = GroupLessonService()
