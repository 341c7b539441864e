"""Booking audit trail service.

Audit writes run after the business transition has committed. They are
best-effort: a failed audit write is logged and rolled back on its own, and
never undoes the transition it describes.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.admin import AdminAction, BookingStateTransition
from app.models.payment import BookingPayment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldChange:
    """One field moving from ``old`` to ``new``."""

    field_name: str
    old: str | None
    new: str


class AuditService:
    """Service for payment-intent and state-transition audit records."""

    # Payment record statuses
    PAYMENT_EVENT_STATUSES = {
        "created",
        "requires_payment_method",
        "requires_capture",
        "authorized",
        "captured",
        "cancelled",
        "refunded",
        "failed",
    }

    async def record_payment_event(
        self,
        db: AsyncSession,
        booking_id: UUID,
        payment_intent_id: str,
        amount_cents: int,
        status: str,
        participant_id: UUID | None = None,
        refunded_amount_cents: int | None = None,
    ) -> BookingPayment | None:
        """Upsert the payment record for an intent.

        Args:
            db: Database session
            booking_id: Booking the intent pays for
            payment_intent_id: Processor intent id (the record key)
            amount_cents: Intent amount
            status: New lifecycle status
            participant_id: Group participant paying, if any
            refunded_amount_cents: Cumulative refunded amount

        Returns:
            The stored record, or None if the write failed
        """
        if status not in self.PAYMENT_EVENT_STATUSES:
            logger.error(f"Unknown payment event status '{status}' for {payment_intent_id}")
            return None

        try:
            record = await self._upsert_payment(
                db,
                booking_id,
                payment_intent_id,
                amount_cents,
                status,
                participant_id,
                refunded_amount_cents,
            )
            await db.commit()
            return record
        except IntegrityError:
            # Concurrent first event for the same intent; the row exists now
            await db.rollback()
            try:
                record = await self._upsert_payment(
                    db,
                    booking_id,
                    payment_intent_id,
                    amount_cents,
                    status,
                    participant_id,
                    refunded_amount_cents,
                )
                await db.commit()
                return record
            except Exception:
                await db.rollback()
                logger.exception(f"Failed to record payment event {status} for {payment_intent_id}")
                return None
        except Exception:
            await db.rollback()
            logger.exception(f"Failed to record payment event {status} for {payment_intent_id}")
            return None

    async def _upsert_payment(
        self,
        db: AsyncSession,
        booking_id: UUID,
        payment_intent_id: str,
        amount_cents: int,
        status: str,
        participant_id: UUID | None,
        refunded_amount_cents: int | None,
    ) -> BookingPayment:
        now = datetime.now(UTC)
        result = await db.execute(
            select(BookingPayment).where(BookingPayment.payment_intent_id == payment_intent_id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            record = BookingPayment(
                payment_intent_id=payment_intent_id,
                booking_id=booking_id,
                participant_id=participant_id,
                amount_cents=amount_cents,
                currency=settings.stripe_currency,
                status=status,
                capture_method="manual",
                refunded_amount_cents=refunded_amount_cents or 0,
                last_event_at=now,
            )
            db.add(record)
        else:
            record.status = status
            record.last_event_at = now
            if refunded_amount_cents is not None:
                record.refunded_amount_cents = refunded_amount_cents
        await db.flush()
        return record

    async def record_transitions(
        self,
        db: AsyncSession,
        booking_id: UUID,
        changes: list[FieldChange],
        changed_by: UUID | None = None,
        reason: str | None = None,
        participant_id: UUID | None = None,
    ) -> int:
        """Append one record per field that actually changed.

        Returns:
            Number of records written (0 on failure)
        """
        entries = [
            BookingStateTransition(
                booking_id=booking_id,
                participant_id=participant_id,
                field_name=change.field_name,
                old_value=change.old,
                new_value=change.new,
                changed_by=changed_by,
                reason=reason,
            )
            for change in changes
            if change.old != change.new
        ]
        if not entries:
            return 0

        try:
            db.add_all(entries)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception(
                f"Failed to record {len(entries)} state transitions for booking {booking_id}"
            )
            return 0
        return len(entries)

    async def record_state_transition(
        self,
        db: AsyncSession,
        booking_id: UUID,
        field_name: str,
        old: str | None,
        new: str,
        changed_by: UUID | None = None,
        reason: str | None = None,
        participant_id: UUID | None = None,
    ) -> bool:
        """Record a single field transition; no-op when the value did not change."""
        written = await self.record_transitions(
            db,
            booking_id,
            [FieldChange(field_name, old, new)],
            changed_by=changed_by,
            reason=reason,
            participant_id=participant_id,
        )
        return written == 1

    async def log_admin_action(
        self,
        db: AsyncSession,
        admin_id: UUID,
        action_type: str,
        target_user_id: UUID | None = None,
        target_booking_id: UUID | None = None,
        notes: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AdminAction | None:
        """Record a privileged operation.

        Args:
            db: Database session
            admin_id: Admin performing the action
            action_type: Action name (e.g., "approve_coach", "refund")
            target_user_id: User acted upon
            target_booking_id: Booking acted upon
            notes: Free-form admin notes
            details: Structured extra data (amounts, previous values)

        Returns:
            Created record, or None if the write failed
        """
        action = AdminAction(
            admin_id=admin_id,
            action_type=action_type,
            target_user_id=target_user_id,
            target_booking_id=target_booking_id,
            notes=notes,
            details=details,
        )
        try:
            db.add(action)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception(f"Failed to record admin action {action_type} by {admin_id}")
            return None
        return action


audit_service = AuditService()
