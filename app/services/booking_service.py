"""Booking lifecycle service for individual and private-group bookings.

Every payment-affecting transition calls the gateway first and persists the
new state only once the gateway call succeeded. Audit records and emails are
written after the transition commits.
"""

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import (
    AuthorizationError,
    GatewayError,
    InvalidStateError,
    StateConflictError,
    ValidationError,
)
from app.core.idempotency import generate_idempotency_key
from app.core.permissions import Actor, UserRole, require_owner, require_role
from app.core.results import OperationResult, run_operation
from app.database import as_utc, utcnow
from app.domain.booking_state import (
    ApprovalStatus,
    BookingType,
    FulfillmentStatus,
    assert_approval_transition,
    assert_fulfillment_transition,
    can_cancel,
    derive_ui_status,
)
from app.domain.cancellation_policy import calculate_refund_amount
from app.domain.payment_state import IntentStatus, assert_payment_transition
from app.models.booking import (
    Booking,
    BookingParticipant,
    IndividualBookingDetails,
    PrivateGroupBookingDetails,
)
from app.models.user import CoachProfile, GroupPricingTier, User
from app.services.audit_service import FieldChange
from app.services.booking_base import BookingAggregate
from app.services.pricing_service import PricingBreakdown

logger = logging.getLogger(__name__)

PRIMARY_KINDS = (BookingType.INDIVIDUAL, BookingType.PRIVATE_GROUP)
UNPAID_STATUSES = ("awaiting_client_payment", "authorized")
REFUNDABLE_STATUSES = ("captured", "partially_refunded")


def _pricing_data(pricing: PricingBreakdown) -> dict[str, Any]:
    return {
        "client_pays_cents": pricing.client_pays_cents,
        "platform_fee_cents": pricing.platform_fee_cents,
        "processor_fee_cents": pricing.processor_fee_cents,
        "coach_payout_cents": pricing.coach_payout_cents,
    }


def _details_model(booking: Booking) -> type[IndividualBookingDetails] | type[PrivateGroupBookingDetails]:
    if booking.booking_type == BookingType.PRIVATE_GROUP:
        return PrivateGroupBookingDetails
    return IndividualBookingDetails


class BookingService(BookingAggregate):
    """Service for the individual and private-group booking lifecycle."""

    # ==================== CREATE ====================

    async def create_booking(
        self,
        db: AsyncSession,
        actor: Actor,
        coach_id: UUID,
        scheduled_start_at: datetime,
        scheduled_end_at: datetime,
        location: dict[str, Any],
        client_message: str | None = None,
        payment_intent_id: str | None = None,
    ) -> OperationResult:
        """Create an individual booking request and open its payment hold.

        Args:
            db: Database session
            actor: Requesting client
            coach_id: Coach being booked
            scheduled_start_at: Session start (UTC)
            scheduled_end_at: Session end (UTC)
            location: Where the session takes place
            client_message: Note to the coach
            payment_intent_id: Hold the client already authorized, if any

        Returns:
            OperationResult with booking id, payment intent and pricing
        """
        return await run_operation(
            db,
            "create_booking",
            coach_id,
            lambda: self._create_booking(
                db,
                actor,
                coach_id,
                scheduled_start_at,
                scheduled_end_at,
                location,
                client_message,
                payment_intent_id,
            ),
        )

    async def _create_booking(
        self,
        db: AsyncSession,
        actor: Actor,
        coach_id: UUID,
        start: datetime,
        end: datetime,
        location: dict[str, Any],
        client_message: str | None,
        payment_intent_id: str | None,
    ) -> OperationResult:
        require_role(actor, UserRole.CLIENT)
        if actor.id == coach_id:
            raise ValidationError("You cannot book yourself")
        now = utcnow()
        duration = self._validate_window(start, end, now)

        idempotency_key = generate_idempotency_key(
            "create_booking",
            actor.id,
            {"coach_id": coach_id, "start": start, "end": end, "location": location},
        )
        duplicate = await self._find_recent_duplicate(db, idempotency_key, now)
        if duplicate is not None:
            return duplicate

        coach = await self._get_bookable_coach(db, coach_id)
        await self._assert_slot_available(db, coach_id, start, end, now)

        try:
            pricing = self.pricing.calculate_booking_pricing(
                coach.hourly_rate_cents, duration, coach.user.platform_fee_percent
            )
        except ValueError as e:
            raise ValidationError(str(e))

        booking_id = uuid4()
        intent_id, client_secret, payment_status = await self._acquire_hold(
            db,
            payment_intent_id,
            pricing,
            coach,
            {
                "booking_id": str(booking_id),
                "booking_type": BookingType.INDIVIDUAL.value,
                "coach_id": str(coach_id),
                "client_id": str(actor.id),
            },
        )

        booking = Booking(
            id=booking_id,
            coach_id=coach_id,
            booking_type=BookingType.INDIVIDUAL.value,
            scheduled_start_at=start,
            scheduled_end_at=end,
            duration_minutes=duration,
            location=location,
            client_message=client_message,
            approval_status=ApprovalStatus.PENDING.value,
            fulfillment_status=FulfillmentStatus.SCHEDULED.value,
            idempotency_key=idempotency_key,
            locked_until=now + timedelta(minutes=settings.slot_lock_minutes),
        )
        booking.individual_details = IndividualBookingDetails(
            client_id=actor.id,
            coach_rate_cents=coach.hourly_rate_cents,
            **_pricing_data(pricing),
            payment_status=payment_status,
            payment_intent_id=intent_id,
            payment_due_at=self._payment_due_at(payment_status, now),
            authorized_at=now if payment_status == "authorized" else None,
        )
        await self._insert_booking(db, booking, intent_id, payment_intent_id is None)

        await self._after_create(db, booking, coach, actor, intent_id, pricing.client_pays_cents, payment_status)
        return OperationResult.ok(
            booking_id=booking.id,
            payment_intent_id=intent_id,
            client_secret=client_secret,
            payment_status=payment_status,
            payment_due_at=booking.individual_details.payment_due_at,
            status=derive_ui_status(booking.approval_status, booking.fulfillment_status, payment_status),
            **_pricing_data(pricing),
        )

    async def create_private_group_booking(
        self,
        db: AsyncSession,
        actor: Actor,
        coach_id: UUID,
        scheduled_start_at: datetime,
        scheduled_end_at: datetime,
        location: dict[str, Any],
        participant_ids: list[UUID],
        client_message: str | None = None,
    ) -> OperationResult:
        """Create a private group booking paid in full by the organizer."""
        return await run_operation(
            db,
            "create_private_group_booking",
            coach_id,
            lambda: self._create_private_group_booking(
                db,
                actor,
                coach_id,
                scheduled_start_at,
                scheduled_end_at,
                location,
                participant_ids,
                client_message,
            ),
        )

    async def _create_private_group_booking(
        self,
        db: AsyncSession,
        actor: Actor,
        coach_id: UUID,
        start: datetime,
        end: datetime,
        location: dict[str, Any],
        participant_ids: list[UUID],
        client_message: str | None,
    ) -> OperationResult:
        require_role(actor, UserRole.CLIENT)
        invitees = list(dict.fromkeys(participant_ids))
        if not invitees:
            raise ValidationError("A private group needs at least one invited participant")
        if actor.id in invitees:
            raise ValidationError("The organizer is included automatically")
        if coach_id in invitees or actor.id == coach_id:
            raise ValidationError("The coach cannot be a participant")
        now = utcnow()
        duration = self._validate_window(start, end, now)

        idempotency_key = generate_idempotency_key(
            "create_booking",
            actor.id,
            {
                "coach_id": coach_id,
                "start": start,
                "end": end,
                "location": location,
                "participants": sorted(str(p) for p in invitees),
            },
        )
        duplicate = await self._find_recent_duplicate(db, idempotency_key, now)
        if duplicate is not None:
            return duplicate

        coach = await self._get_bookable_coach(db, coach_id)
        if not coach.allows_private_groups:
            raise ValidationError("This coach does not offer private group sessions")

        result = await db.execute(select(User).where(User.id.in_(invitees)))
        found = {user.id: user for user in result.scalars()}
        missing = [str(p) for p in invitees if p not in found]
        if missing:
            raise ValidationError(f"Unknown participants: {', '.join(missing)}")
        if any(not user.is_active for user in found.values()):
            raise ValidationError("All participants must have active accounts")

        group_size = len(invitees) + 1
        tier = await self._find_pricing_tier(db, coach_id, group_size)
        try:
            pricing = self.pricing.calculate_coach_earnings(
                tier.price_per_person_cents * group_size, coach.user.platform_fee_percent
            )
        except ValueError as e:
            raise ValidationError(str(e))

        await self._assert_slot_available(db, coach_id, start, end, now)

        booking_id = uuid4()
        intent_id, client_secret, payment_status = await self._acquire_hold(
            db,
            None,
            pricing,
            coach,
            {
                "booking_id": str(booking_id),
                "booking_type": BookingType.PRIVATE_GROUP.value,
                "coach_id": str(coach_id),
                "organizer_id": str(actor.id),
                "group_size": str(group_size),
            },
        )

        booking = Booking(
            id=booking_id,
            coach_id=coach_id,
            booking_type=BookingType.PRIVATE_GROUP.value,
            scheduled_start_at=start,
            scheduled_end_at=end,
            duration_minutes=duration,
            location=location,
            client_message=client_message,
            approval_status=ApprovalStatus.PENDING.value,
            fulfillment_status=FulfillmentStatus.SCHEDULED.value,
            idempotency_key=idempotency_key,
            locked_until=now + timedelta(minutes=settings.slot_lock_minutes),
        )
        booking.private_group_details = PrivateGroupBookingDetails(
            organizer_id=actor.id,
            price_per_person_cents=tier.price_per_person_cents,
            total_gross_cents=pricing.client_pays_cents,
            platform_fee_cents=pricing.platform_fee_cents,
            processor_fee_cents=pricing.processor_fee_cents,
            coach_payout_cents=pricing.coach_payout_cents,
            min_participants=group_size,
            max_participants=group_size,
            current_participants=group_size,
            captured_participants=0,
            payment_status=payment_status,
            payment_intent_id=intent_id,
            payment_due_at=self._payment_due_at(payment_status, now),
            authorized_at=now if payment_status == "authorized" else None,
        )
        booking.participants = [
            BookingParticipant(
                user_id=actor.id,
                is_organizer=True,
                amount_cents=pricing.client_pays_cents,
            )
        ] + [BookingParticipant(user_id=user_id, is_organizer=False) for user_id in invitees]
        await self._insert_booking(db, booking, intent_id, True)

        await self._after_create(db, booking, coach, actor, intent_id, pricing.client_pays_cents, payment_status)
        return OperationResult.ok(
            booking_id=booking.id,
            payment_intent_id=intent_id,
            client_secret=client_secret,
            payment_status=payment_status,
            payment_due_at=booking.private_group_details.payment_due_at,
            group_size=group_size,
            price_per_person_cents=tier.price_per_person_cents,
            status=derive_ui_status(booking.approval_status, booking.fulfillment_status, payment_status),
            **_pricing_data(pricing),
        )

    async def _find_recent_duplicate(
        self, db: AsyncSession, idempotency_key: str, now: datetime
    ) -> OperationResult | None:
        """Return the earlier booking for a retried request inside the idempotency window."""
        result = await db.execute(select(Booking).where(Booking.idempotency_key == idempotency_key))
        existing = result.scalar_one_or_none()
        if existing is None:
            return None

        window = timedelta(hours=settings.booking_idempotency_hours)
        if now - as_utc(existing.created_at) < window:
            logger.info(f"Duplicate booking request resolved to {existing.id}")
            details = existing.details
            return OperationResult.ok(
                booking_id=existing.id,
                payment_intent_id=details.payment_intent_id,
                payment_status=details.payment_status,
                duplicate=True,
                status=derive_ui_status(
                    existing.approval_status, existing.fulfillment_status, details.payment_status
                ),
            )

        # Stale key: free it for the new request
        existing.idempotency_key = None
        await db.flush()
        return None

    async def _find_pricing_tier(self, db: AsyncSession, coach_id: UUID, group_size: int) -> GroupPricingTier:
        result = await db.execute(
            select(GroupPricingTier)
            .where(
                GroupPricingTier.coach_id == coach_id,
                GroupPricingTier.min_participants <= group_size,
                GroupPricingTier.max_participants >= group_size,
            )
            .order_by(GroupPricingTier.min_participants.desc())
            .limit(1)
        )
        tier = result.scalar_one_or_none()
        if tier is None:
            raise ValidationError(f"Coach has no group pricing for {group_size} participants")
        return tier

    async def _acquire_hold(
        self,
        db: AsyncSession,
        payment_intent_id: str | None,
        pricing: PricingBreakdown,
        coach: CoachProfile,
        metadata: dict[str, str],
    ) -> tuple[str, str | None, str]:
        """Open a new hold routed to the coach, or adopt one the client already authorized.

        Returns:
            Tuple of (intent id, client secret, initial payment status)
        """
        if payment_intent_id:
            taken = await db.execute(
                select(IndividualBookingDetails.booking_id).where(
                    IndividualBookingDetails.payment_intent_id == payment_intent_id
                )
            )
            if taken.first() is not None:
                raise StateConflictError("This payment has already been used for another booking")
            intent = await self.gateway.read_back(payment_intent_id)
            if intent.status != IntentStatus.REQUIRES_CAPTURE:
                raise InvalidStateError(
                    f"Payment not authorized - status is '{intent.status}'",
                    intent_status=intent.status,
                )
            if not self.pricing.validate_payment_amount(pricing.client_pays_cents, intent.amount):
                raise ValidationError(
                    f"Payment amount {intent.amount} does not match booking price {pricing.client_pays_cents}"
                )
            return intent.id, intent.client_secret, "authorized"

        intent = await self.gateway.open_hold(
            pricing.client_pays_cents,
            coach.payout_account_id,
            metadata,
            application_fee_cents=pricing.client_pays_cents - pricing.coach_payout_cents,
        )
        status = "authorized" if intent.status == IntentStatus.REQUIRES_CAPTURE else "awaiting_client_payment"
        return intent.id, intent.client_secret, status

    def _payment_due_at(self, payment_status: str, now: datetime) -> datetime | None:
        if payment_status != "awaiting_client_payment":
            return None
        return now + timedelta(hours=settings.payment_window_hours)

    async def _insert_booking(
        self, db: AsyncSession, booking: Booking, intent_id: str, release_on_failure: bool
    ) -> None:
        """Commit a new booking; a hold opened for it is released if the insert fails."""
        db.add(booking)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            await self._release_orphan_hold(intent_id, release_on_failure)
            raise StateConflictError("Time slot no longer available")
        except Exception:
            await db.rollback()
            await self._release_orphan_hold(intent_id, release_on_failure)
            raise

    async def _release_orphan_hold(self, intent_id: str, release: bool) -> None:
        if not release:
            return
        try:
            await self.gateway.release_hold(intent_id)
        except GatewayError:
            logger.exception(f"Failed to release hold {intent_id} for a booking that was not saved")

    async def _after_create(
        self,
        db: AsyncSession,
        booking: Booking,
        coach: CoachProfile,
        actor: Actor,
        intent_id: str,
        amount_cents: int,
        payment_status: str,
    ) -> None:
        await self.audit.record_payment_event(
            db,
            booking.id,
            intent_id,
            amount_cents,
            "authorized" if payment_status == "authorized" else "created",
        )
        await self.audit.record_transitions(
            db,
            booking.id,
            [
                FieldChange("approval_status", None, booking.approval_status),
                FieldChange("payment_status", None, payment_status),
            ],
            changed_by=actor.id,
            reason="Booking requested",
        )
        requester = await self._get_user(db, actor.id)
        await self._send(
            f"booking request {booking.id}",
            lambda: self.notifier.notify_booking_request(
                coach.user.email, requester.name, booking, amount_cents
            ),
        )
        logger.info(f"Booking {booking.id} created by {actor.id} ({booking.booking_type}, {payment_status})")

    # ==================== PAYMENT CONFIRMATION ====================

    async def confirm_payment(self, db: AsyncSession, actor: Actor, booking_id: UUID) -> OperationResult:
        """Record that the client completed card entry on the hold."""
        return await run_operation(
            db, "confirm_payment", booking_id, lambda: self._confirm_payment(db, actor, booking_id)
        )

    async def _confirm_payment(self, db: AsyncSession, actor: Actor, booking_id: UUID) -> OperationResult:
        booking = await self._get_primary_booking(db, booking_id)
        details = booking.details
        require_owner(actor, details.payer_id, "Only the paying client can confirm payment")

        if details.payment_status == "authorized":
            return OperationResult.ok(booking_id=booking.id, payment_status="authorized")
        if details.payment_status != "awaiting_client_payment":
            raise StateConflictError(f"Payment is already {details.payment_status}")
        if booking.approval_status != ApprovalStatus.PENDING:
            raise StateConflictError(f"Booking is {booking.approval_status}")
        now = utcnow()
        due = as_utc(details.payment_due_at)
        if due is not None and due <= now:
            raise StateConflictError("The payment window for this booking has expired")

        intent = await self.gateway.read_back(details.payment_intent_id)
        if intent.status != IntentStatus.REQUIRES_CAPTURE:
            raise InvalidStateError(
                f"Payment not completed - status is '{intent.status}'",
                intent_status=intent.status,
            )

        await self._authorize(db, booking, now)
        await db.commit()

        await self._after_authorize(db, booking, actor.id, "Client completed payment")
        return OperationResult.ok(booking_id=booking.id, payment_status="authorized")

    async def _authorize(self, db: AsyncSession, booking: Booking, now: datetime) -> None:
        assert_payment_transition(booking.details.payment_status, "authorized")
        await self._transition_details(
            db,
            _details_model(booking),
            booking.id,
            {"payment_status": "awaiting_client_payment"},
            {"payment_status": "authorized", "authorized_at": now},
        )

    async def _after_authorize(
        self, db: AsyncSession, booking: Booking, changed_by: UUID | None, reason: str
    ) -> None:
        details = booking.details
        await self.audit.record_payment_event(
            db, booking.id, details.payment_intent_id, details.charge_amount_cents, "authorized"
        )
        await self.audit.record_state_transition(
            db,
            booking.id,
            "payment_status",
            "awaiting_client_payment",
            "authorized",
            changed_by=changed_by,
            reason=reason,
        )

    # ==================== COACH RESPONSE ====================

    async def accept_booking(self, db: AsyncSession, actor: Actor, booking_id: UUID) -> OperationResult:
        """Accept a booking request, capturing the hold."""
        return await run_operation(
            db, "accept_booking", booking_id, lambda: self._accept_booking(db, actor, booking_id)
        )

    async def _accept_booking(self, db: AsyncSession, actor: Actor, booking_id: UUID) -> OperationResult:
        booking = await self._get_primary_booking(db, booking_id)
        require_owner(actor, booking.coach_id, "Only the booked coach can accept this booking")
        details = booking.details
        assert_approval_transition(booking.approval_status, ApprovalStatus.ACCEPTED.value)
        now = utcnow()
        if self._session_started(booking, now):
            raise StateConflictError("Cannot accept a booking for a session that has already started")
        if details.payment_status not in UNPAID_STATUSES:
            raise StateConflictError(f"Cannot accept a booking whose payment is {details.payment_status}")
        previous_payment = details.payment_status

        # Capture first: no accepted state without captured money
        intent = await self.gateway.capture_hold(details.payment_intent_id)

        try:
            await self._transition_booking(
                db,
                booking.id,
                {"approval_status": ApprovalStatus.PENDING.value},
                {
                    "approval_status": ApprovalStatus.ACCEPTED.value,
                    "coach_responded_at": now,
                    "locked_until": None,
                },
            )
            await self._transition_details(
                db,
                _details_model(booking),
                booking.id,
                {"payment_status": UNPAID_STATUSES},
                {"payment_status": "captured", "captured_at": now},
            )
            if booking.booking_type == BookingType.PRIVATE_GROUP:
                await self._guarded_update(
                    db,
                    BookingParticipant,
                    [BookingParticipant.booking_id == booking.id, BookingParticipant.status == "awaiting_coach"],
                    {"status": "accepted", "payment_status": "captured", "captured_at": now},
                )
                await self._guarded_update(
                    db,
                    PrivateGroupBookingDetails,
                    [PrivateGroupBookingDetails.booking_id == booking.id],
                    {"captured_participants": PrivateGroupBookingDetails.current_participants},
                )
            await db.commit()
        except StateConflictError:
            await db.rollback()
            await self._compensate_capture(intent.id)
            raise

        await self.audit.record_payment_event(
            db, booking.id, intent.id, intent.amount, "captured"
        )
        await self.audit.record_transitions(
            db,
            booking.id,
            [
                FieldChange("approval_status", ApprovalStatus.PENDING.value, ApprovalStatus.ACCEPTED.value),
                FieldChange("payment_status", previous_payment, "captured"),
            ],
            changed_by=actor.id,
            reason="Coach accepted",
        )
        await self._send(
            f"booking accepted {booking.id}",
            lambda: self.notifier.notify_booking_accepted(details.payer.email, booking.coach.name, booking),
        )
        logger.info(f"Booking {booking.id} accepted by coach {actor.id}")
        return OperationResult.ok(booking_id=booking.id, approval_status="accepted", payment_status="captured")

    async def _compensate_capture(self, intent_id: str) -> None:
        """Refund a capture whose booking update lost a race."""
        try:
            await self.gateway.refund_payment(intent_id, reverse_transfer=True)
            logger.warning(f"Refunded capture of {intent_id} after a concurrent booking change")
        except GatewayError:
            logger.exception(f"Captured {intent_id} but could not refund it after a concurrent change")

    async def decline_booking(
        self, db: AsyncSession, actor: Actor, booking_id: UUID, reason: str | None = None
    ) -> OperationResult:
        """Decline a booking request, releasing the hold."""
        return await run_operation(
            db, "decline_booking", booking_id, lambda: self._decline_booking(db, actor, booking_id, reason)
        )

    async def _decline_booking(
        self, db: AsyncSession, actor: Actor, booking_id: UUID, reason: str | None
    ) -> OperationResult:
        booking = await self._get_primary_booking(db, booking_id)
        require_owner(actor, booking.coach_id, "Only the booked coach can decline this booking")
        details = booking.details
        assert_approval_transition(booking.approval_status, ApprovalStatus.DECLINED.value)
        if details.payment_status not in UNPAID_STATUSES:
            raise StateConflictError(f"Cannot decline a booking whose payment is {details.payment_status}")
        previous_payment = details.payment_status
        now = utcnow()

        if details.payment_intent_id:
            await self.gateway.release_hold(details.payment_intent_id)

        await self._transition_booking(
            db,
            booking.id,
            {"approval_status": ApprovalStatus.PENDING.value},
            {
                "approval_status": ApprovalStatus.DECLINED.value,
                "decline_reason": reason,
                "coach_responded_at": now,
                "locked_until": None,
            },
        )
        await self._transition_details(
            db,
            _details_model(booking),
            booking.id,
            {"payment_status": previous_payment},
            {"payment_status": "cancelled"},
        )
        if booking.booking_type == BookingType.PRIVATE_GROUP:
            await self._close_group_participants(db, booking.id, "declined", "cancelled", now)
        await db.commit()

        await self.audit.record_payment_event(
            db, booking.id, details.payment_intent_id, details.charge_amount_cents, "cancelled"
        )
        await self.audit.record_transitions(
            db,
            booking.id,
            [
                FieldChange("approval_status", ApprovalStatus.PENDING.value, ApprovalStatus.DECLINED.value),
                FieldChange("payment_status", previous_payment, "cancelled"),
            ],
            changed_by=actor.id,
            reason=reason or "Coach declined",
        )
        await self._send(
            f"booking declined {booking.id}",
            lambda: self.notifier.notify_booking_declined(details.payer.email, booking.coach.name, booking, reason),
        )
        logger.info(f"Booking {booking.id} declined by coach {actor.id}")
        return OperationResult.ok(booking_id=booking.id, approval_status="declined", payment_status="cancelled")

    async def _close_group_participants(
        self, db: AsyncSession, booking_id: UUID, status: str, payment_status: str, now: datetime
    ) -> None:
        await self._guarded_update(
            db,
            BookingParticipant,
            [
                BookingParticipant.booking_id == booking_id,
                BookingParticipant.status.in_(("awaiting_coach", "accepted")),
            ],
            {"status": status, "payment_status": payment_status, "cancelled_at": now},
        )

    # ==================== CANCELLATION ====================

    async def cancel_booking(
        self, db: AsyncSession, actor: Actor, booking_id: UUID, reason: str | None = None
    ) -> OperationResult:
        """Cancel a booking as the client or the coach, refunding per the policy tiers."""
        return await run_operation(
            db, "cancel_booking", booking_id, lambda: self._cancel_booking(db, actor, booking_id, reason)
        )

    async def _cancel_booking(
        self, db: AsyncSession, actor: Actor, booking_id: UUID, reason: str | None
    ) -> OperationResult:
        booking = await self._get_primary_booking(db, booking_id)
        details = booking.details
        if actor.id not in (details.payer_id, booking.coach_id) and not actor.is_admin:
            raise AuthorizationError("You don't have permission to cancel this booking")
        allowed, error = can_cancel(booking.approval_status, booking.fulfillment_status)
        if not allowed:
            raise StateConflictError(error)
        previous_approval = booking.approval_status
        previous_payment = details.payment_status
        now = utcnow()

        refund_cents = 0
        if previous_payment in REFUNDABLE_STATUSES:
            # Tier applies to the full charge, capped by what earlier refunds left
            already = booking.refund_amount_cents or 0
            remaining = details.charge_amount_cents - already
            tier_cents = calculate_refund_amount(
                as_utc(booking.scheduled_start_at), now, details.charge_amount_cents
            )
            refund_cents = min(tier_cents, remaining)
            if refund_cents > 0:
                await self.gateway.refund_payment(
                    details.payment_intent_id, refund_cents, reverse_transfer=True
                )
                new_payment = "refunded" if refund_cents == remaining else "partially_refunded"
            else:
                new_payment = previous_payment
        elif previous_payment in UNPAID_STATUSES:
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
                _details_model(booking),
                booking.id,
                {"payment_status": previous_payment},
                {"payment_status": new_payment},
            )
        if booking.booking_type == BookingType.PRIVATE_GROUP:
            if refund_cents:
                participant_payment = "refunded"
            elif new_payment == "cancelled":
                participant_payment = "cancelled"
            else:
                participant_payment = "captured"
            await self._close_group_participants(db, booking.id, "cancelled", participant_payment, now)
        await db.commit()

        if details.payment_intent_id and new_payment != previous_payment:
            await self.audit.record_payment_event(
                db,
                booking.id,
                details.payment_intent_id,
                details.charge_amount_cents,
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
            reason=reason or "Booking cancelled",
        )
        await self._notify_cancellation(db, booking, actor, refund_cents)
        logger.info(f"Booking {booking.id} cancelled by {actor.id}, refund {refund_cents} cents")
        return OperationResult.ok(
            booking_id=booking.id,
            approval_status="cancelled",
            payment_status=new_payment,
            refund_amount_cents=refund_cents,
        )

    async def _notify_cancellation(
        self, db: AsyncSession, booking: Booking, actor: Actor, refund_cents: int
    ) -> None:
        canceller = await self._get_user(db, actor.id)
        payer = booking.details.payer
        recipients = [user for user in (payer, booking.coach) if user.id != actor.id]
        for user in recipients:
            await self._send(
                f"booking cancelled {booking.id} to {user.id}",
                lambda: self.notifier.notify_booking_cancelled(user.email, booking, refund_cents, canceller.name),
            )

    # ==================== FULFILLMENT ====================

    async def complete_booking(self, db: AsyncSession, actor: Actor, booking_id: UUID) -> OperationResult:
        """Mark an accepted, paid session as delivered."""
        return await run_operation(
            db, "complete_booking", booking_id, lambda: self._complete_booking(db, actor, booking_id)
        )

    async def _complete_booking(self, db: AsyncSession, actor: Actor, booking_id: UUID) -> OperationResult:
        booking = await self._get_primary_booking(db, booking_id)
        if not actor.is_admin:
            require_owner(actor, booking.coach_id, "Only the booked coach can complete this booking")
        now = utcnow()
        if not self._session_started(booking, now):
            raise StateConflictError("Cannot complete a session that has not started")
        await self._complete(db, booking, now, actor.id, "Coach marked complete")
        return OperationResult.ok(booking_id=booking.id, fulfillment_status="completed")

    async def auto_complete_booking(self, db: AsyncSession, booking_id: UUID) -> OperationResult:
        """Complete a booking the coach never marked complete after the grace period."""
        return await run_operation(
            db, "auto_complete_booking", booking_id, lambda: self._auto_complete(db, booking_id)
        )

    async def _auto_complete(self, db: AsyncSession, booking_id: UUID) -> OperationResult:
        booking = await self._get_primary_booking(db, booking_id)
        now = utcnow()
        grace = timedelta(days=settings.auto_complete_after_days)
        if as_utc(booking.scheduled_end_at) + grace > now:
            raise StateConflictError("Booking is still inside the completion grace period")
        await self._complete(db, booking, now, None, "Auto-completed after grace period")
        return OperationResult.ok(booking_id=booking.id, fulfillment_status="completed")

    async def _complete(
        self,
        db: AsyncSession,
        booking: Booking,
        now: datetime,
        changed_by: UUID | None,
        reason: str,
    ) -> None:
        if booking.approval_status != ApprovalStatus.ACCEPTED:
            raise StateConflictError(f"Cannot complete a {booking.approval_status} booking")
        assert_fulfillment_transition(booking.fulfillment_status, FulfillmentStatus.COMPLETED.value)
        if booking.details.payment_status not in REFUNDABLE_STATUSES:
            raise StateConflictError("Cannot complete a booking that has not been paid")

        await self._transition_booking(
            db,
            booking.id,
            {
                "approval_status": ApprovalStatus.ACCEPTED.value,
                "fulfillment_status": FulfillmentStatus.SCHEDULED.value,
            },
            {"fulfillment_status": FulfillmentStatus.COMPLETED.value, "completed_at": now},
        )
        await self._guarded_update(
            db,
            CoachProfile,
            [CoachProfile.user_id == booking.coach_id],
            {"lessons_completed": CoachProfile.lessons_completed + 1},
        )
        if changed_by is None:
            # Auto-completion stands in for the payer's confirmation
            model = _details_model(booking)
            stamp = "organizer_confirmed_at" if model is PrivateGroupBookingDetails else "client_confirmed_at"
            await self._guarded_update(
                db, model, [model.booking_id == booking.id, getattr(model, stamp).is_(None)], {stamp: now}
            )
        await db.commit()

        await self.audit.record_state_transition(
            db,
            booking.id,
            "fulfillment_status",
            FulfillmentStatus.SCHEDULED.value,
            FulfillmentStatus.COMPLETED.value,
            changed_by=changed_by,
            reason=reason,
        )
        await self._send(
            f"booking completed {booking.id}",
            lambda: self.notifier.notify_booking_completed(booking.details.payer.email, booking),
        )
        logger.info(f"Booking {booking.id} completed ({reason})")

    # ==================== DISPUTES & REFUNDS ====================

    async def open_dispute(
        self, db: AsyncSession, actor: Actor, booking_id: UUID, reason: str
    ) -> OperationResult:
        """Flag a delivered session as disputed by the paying client."""
        return await run_operation(
            db, "open_dispute", booking_id, lambda: self._open_dispute(db, actor, booking_id, reason)
        )

    async def _open_dispute(
        self, db: AsyncSession, actor: Actor, booking_id: UUID, reason: str
    ) -> OperationResult:
        booking = await self._get_primary_booking(db, booking_id)
        require_owner(actor, booking.details.payer_id, "Only the paying client can dispute this booking")
        if booking.approval_status != ApprovalStatus.ACCEPTED:
            raise StateConflictError(f"Cannot dispute a {booking.approval_status} booking")
        assert_fulfillment_transition(booking.fulfillment_status, FulfillmentStatus.DISPUTED.value)
        now = utcnow()
        if not self._session_started(booking, now):
            raise StateConflictError("Cannot dispute a session that has not started")

        await self._transition_booking(
            db,
            booking.id,
            {"fulfillment_status": FulfillmentStatus.SCHEDULED.value},
            {
                "fulfillment_status": FulfillmentStatus.DISPUTED.value,
                "disputed_at": now,
                "dispute_reason": reason,
            },
        )
        await db.commit()

        await self.audit.record_state_transition(
            db,
            booking.id,
            "fulfillment_status",
            FulfillmentStatus.SCHEDULED.value,
            FulfillmentStatus.DISPUTED.value,
            changed_by=actor.id,
            reason=reason,
        )
        logger.warning(f"Booking {booking.id} disputed by {actor.id}")
        return OperationResult.ok(booking_id=booking.id, fulfillment_status="disputed")

    async def resolve_dispute(
        self,
        db: AsyncSession,
        actor: Actor,
        booking_id: UUID,
        refund_amount_cents: int = 0,
        notes: str | None = None,
    ) -> OperationResult:
        """Close a dispute as an admin, optionally refunding the client."""
        return await run_operation(
            db,
            "resolve_dispute",
            booking_id,
            lambda: self._resolve_dispute(db, actor, booking_id, refund_amount_cents, notes),
        )

    async def _resolve_dispute(
        self,
        db: AsyncSession,
        actor: Actor,
        booking_id: UUID,
        refund_amount_cents: int,
        notes: str | None,
    ) -> OperationResult:
        require_role(actor, UserRole.ADMIN)
        booking = await self._get_primary_booking(db, booking_id)
        if booking.fulfillment_status != FulfillmentStatus.DISPUTED:
            raise StateConflictError("Booking is not disputed")
        now = utcnow()

        previous_payment = booking.details.payment_status
        new_payment = previous_payment
        if refund_amount_cents:
            new_payment = await self._refund_primary(db, booking, refund_amount_cents, now)
        await self._transition_booking(
            db,
            booking.id,
            {"fulfillment_status": FulfillmentStatus.DISPUTED.value},
            {"fulfillment_status": FulfillmentStatus.COMPLETED.value, "completed_at": now},
        )
        await db.commit()

        await self._after_refund(db, booking, refund_amount_cents, previous_payment, new_payment, actor.id, notes)
        await self.audit.record_state_transition(
            db,
            booking.id,
            "fulfillment_status",
            FulfillmentStatus.DISPUTED.value,
            FulfillmentStatus.COMPLETED.value,
            changed_by=actor.id,
            reason=notes or "Dispute resolved",
        )
        return OperationResult.ok(
            booking_id=booking.id,
            fulfillment_status="completed",
            payment_status=new_payment,
            refund_amount_cents=refund_amount_cents,
        )

    async def refund_booking(
        self,
        db: AsyncSession,
        actor: Actor,
        booking_id: UUID,
        amount_cents: int | None = None,
        reason: str | None = None,
    ) -> OperationResult:
        """Refund a captured booking as an admin; the full remaining amount when no amount is given."""
        return await run_operation(
            db,
            "refund_booking",
            booking_id,
            lambda: self._refund_booking(db, actor, booking_id, amount_cents, reason),
        )

    async def _refund_booking(
        self,
        db: AsyncSession,
        actor: Actor,
        booking_id: UUID,
        amount_cents: int | None,
        reason: str | None,
    ) -> OperationResult:
        require_role(actor, UserRole.ADMIN)
        booking = await self._get_primary_booking(db, booking_id)
        details = booking.details
        remaining = details.charge_amount_cents - (booking.refund_amount_cents or 0)
        amount = remaining if amount_cents is None else amount_cents
        previous_payment = details.payment_status

        new_payment = await self._refund_primary(db, booking, amount, utcnow())
        await db.commit()

        await self._after_refund(db, booking, amount, previous_payment, new_payment, actor.id, reason)
        return OperationResult.ok(
            booking_id=booking.id,
            payment_status=new_payment,
            refund_amount_cents=amount,
            total_refunded_cents=(booking.refund_amount_cents or 0) + amount,
        )

    async def _refund_primary(
        self, db: AsyncSession, booking: Booking, amount_cents: int, now: datetime
    ) -> str:
        """Refund part of the primary charge and stage the new payment status (no commit)."""
        details = booking.details
        if details.payment_status not in REFUNDABLE_STATUSES:
            raise StateConflictError(f"Cannot refund a booking whose payment is {details.payment_status}")
        already = booking.refund_amount_cents or 0
        remaining = details.charge_amount_cents - already
        if amount_cents <= 0 or amount_cents > remaining:
            raise ValidationError(f"Refund must be between 1 and {remaining} cents")

        await self.gateway.refund_payment(details.payment_intent_id, amount_cents, reverse_transfer=True)

        new_payment = "refunded" if amount_cents == remaining else "partially_refunded"
        assert_payment_transition(details.payment_status, new_payment)
        await self._transition_booking(
            db,
            booking.id,
            {"refund_amount_cents": already},
            {"refund_amount_cents": already + amount_cents, "refund_processed_at": now},
        )
        await self._transition_details(
            db,
            _details_model(booking),
            booking.id,
            {"payment_status": details.payment_status},
            {"payment_status": new_payment},
        )
        return new_payment

    async def _after_refund(
        self,
        db: AsyncSession,
        booking: Booking,
        amount_cents: int,
        previous_payment: str,
        new_payment: str,
        changed_by: UUID,
        reason: str | None,
    ) -> None:
        if not amount_cents:
            return
        details = booking.details
        await self.audit.record_payment_event(
            db,
            booking.id,
            details.payment_intent_id,
            details.charge_amount_cents,
            "refunded",
            refunded_amount_cents=(booking.refund_amount_cents or 0) + amount_cents,
        )
        await self.audit.record_state_transition(
            db,
            booking.id,
            "payment_status",
            previous_payment,
            new_payment,
            changed_by=changed_by,
            reason=reason or "Admin refund",
        )
        logger.info(f"Refunded {amount_cents} cents on booking {booking.id}")

    # ==================== SCHEDULED TRANSITIONS ====================

    async def send_payment_reminder(
        self, db: AsyncSession, booking_id: UUID, final: bool
    ) -> bool:
        """Send the payment reminder once; the sent flag is set before the email goes out.

        Returns:
            True if this call claimed the reminder
        """
        booking = await self._get_primary_booking(db, booking_id)
        flag = "payment_final_reminder_sent_at" if final else "payment_reminder_sent_at"
        model = _details_model(booking)
        claimed = await self._guarded_update(
            db,
            model,
            [
                model.booking_id == booking.id,
                model.payment_status == "awaiting_client_payment",
                getattr(model, flag).is_(None),
            ],
            {flag: utcnow()},
        )
        if claimed != 1:
            await db.rollback()
            return False
        await db.commit()

        details = booking.details
        await self._send(
            f"payment reminder {booking.id}",
            lambda: self.notifier.notify_payment_reminder(
                details.payer.email, booking, details.charge_amount_cents, final
            ),
        )
        return True

    async def expire_unpaid_booking(self, db: AsyncSession, booking_id: UUID) -> str:
        """Cancel a booking whose payment window passed.

        The hold is read back first: a client who authorized at the last
        moment is recorded as authorized instead of being expired.

        Returns:
            "expired", "authorized" or "skipped"
        """
        booking = await self._get_primary_booking(db, booking_id)
        details = booking.details
        now = utcnow()
        due = as_utc(details.payment_due_at)
        if (
            booking.approval_status != ApprovalStatus.PENDING
            or details.payment_status != "awaiting_client_payment"
            or due is None
            or due > now
        ):
            return "skipped"

        if details.payment_intent_id:
            intent = await self.gateway.read_back(details.payment_intent_id)
            if intent.status == IntentStatus.REQUIRES_CAPTURE:
                await self._authorize(db, booking, now)
                await db.commit()
                await self._after_authorize(db, booking, None, "Payment found on expiry check")
                return "authorized"
            if intent.status != IntentStatus.CANCELED:
                await self.gateway.release_hold(details.payment_intent_id)

        await self._transition_booking(
            db,
            booking.id,
            {"approval_status": ApprovalStatus.PENDING.value},
            {
                "approval_status": ApprovalStatus.CANCELLED.value,
                "cancelled_at": now,
                "cancellation_reason": "Payment not received in time",
                "locked_until": None,
            },
        )
        await self._transition_details(
            db,
            _details_model(booking),
            booking.id,
            {"payment_status": "awaiting_client_payment"},
            {"payment_status": "cancelled"},
        )
        if booking.booking_type == BookingType.PRIVATE_GROUP:
            await self._close_group_participants(db, booking.id, "cancelled", "cancelled", now)
        await db.commit()

        if details.payment_intent_id:
            await self.audit.record_payment_event(
                db, booking.id, details.payment_intent_id, details.charge_amount_cents, "cancelled"
            )
        await self.audit.record_transitions(
            db,
            booking.id,
            [
                FieldChange("approval_status", ApprovalStatus.PENDING.value, ApprovalStatus.CANCELLED.value),
                FieldChange("payment_status", "awaiting_client_payment", "cancelled"),
            ],
            reason="Payment deadline passed",
        )
        await self._send(
            f"payment expired {booking.id}",
            lambda: self.notifier.notify_payment_expired(details.payer.email, booking),
        )
        logger.info(f"Booking {booking.id} expired unpaid")
        return "expired"

    async def release_stale_lock(self, db: AsyncSession, booking_id: UUID) -> bool:
        """Clear a checkout lock that has passed; False if already cleared."""
        released = await self._guarded_update(
            db,
            Booking,
            [Booking.id == booking_id, Booking.locked_until.is_not(None), Booking.locked_until < utcnow()],
            {"locked_until": None},
        )
        await db.commit()
        return released == 1

    # ==================== LOADING ====================

    async def _get_primary_booking(self, db: AsyncSession, booking_id: UUID) -> Booking:
        """Load an individual or private-group booking."""
        booking = await self.get_booking(db, booking_id)
        if booking.booking_type not in PRIMARY_KINDS:
            raise StateConflictError("Public group lessons are managed per participant")
        return booking


# Singleton instance
booking_service = BookingService()
