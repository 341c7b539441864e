"""Admin moderation service.

Coach approval and user suspension live here. Booking-level admin actions
(refunds, dispute resolution) go through the booking service so that it stays
the only writer of booking state; this service adds the admin audit record.
"""

import logging
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import StateConflictError, ValidationError
from app.core.permissions import Actor, UserRole, require_role
from app.core.results import OperationResult, run_operation
from app.database import utcnow
from app.models.user import CoachProfile, User
from app.services.audit_service import AuditService, audit_service
from app.services.booking_service import BookingService, booking_service
from app.services.notification_service import NotificationService, notification_service

logger = logging.getLogger(__name__)


class AdminService:
    """Service for privileged operations, each recorded as an admin action."""

    def __init__(
        self,
        bookings: BookingService | None = None,
        audit: AuditService | None = None,
        notifier: NotificationService | None = None,
    ) -> None:
        self.bookings = bookings or booking_service
        self.audit = audit or audit_service
        self.notifier = notifier or notification_service

    # ==================== COACH REVIEW ====================

    async def review_coach(
        self,
        db: AsyncSession,
        actor: Actor,
        coach_id: UUID,
        approve: bool,
        notes: str | None = None,
    ) -> OperationResult:
        """Approve or reject a coach application."""
        return await run_operation(
            db,
            "approve_coach" if approve else "reject_coach",
            coach_id,
            lambda: self._review_coach(db, actor, coach_id, approve, notes),
        )

    async def _review_coach(
        self, db: AsyncSession, actor: Actor, coach_id: UUID, approve: bool, notes: str | None
    ) -> OperationResult:
        require_role(actor, UserRole.ADMIN)
        profile = await db.get(CoachProfile, coach_id)
        if profile is None:
            raise ValidationError("User has no coach profile")
        target = "approved" if approve else "rejected"
        if profile.approval_status == target:
            raise StateConflictError(f"Coach is already {target}")

        previous = profile.approval_status
        profile.approval_status = target
        profile.reviewed_at = utcnow()
        await db.commit()

        await self.audit.log_admin_action(
            db,
            actor.id,
            "approve_coach" if approve else "reject_coach",
            target_user_id=coach_id,
            notes=notes,
            details={"previous_status": previous},
        )
        try:
            await self.notifier.notify_coach_reviewed(profile.user.email, approve, notes)
        except Exception:
            logger.exception(f"Failed to notify coach {coach_id} of review")
        logger.info(f"Coach {coach_id} {target} by admin {actor.id}")
        return OperationResult.ok(coach_id=coach_id, approval_status=target)

    # ==================== USER STATUS ====================

    async def set_user_suspended(
        self,
        db: AsyncSession,
        actor: Actor,
        user_id: UUID,
        suspended: bool,
        reason: str | None = None,
    ) -> OperationResult:
        """Suspend or reinstate a user account."""
        return await run_operation(
            db,
            "suspend_user" if suspended else "reinstate_user",
            user_id,
            lambda: self._set_user_suspended(db, actor, user_id, suspended, reason),
        )

    async def _set_user_suspended(
        self, db: AsyncSession, actor: Actor, user_id: UUID, suspended: bool, reason: str | None
    ) -> OperationResult:
        require_role(actor, UserRole.ADMIN)
        if user_id == actor.id:
            raise ValidationError("You cannot change your own account status")
        user = await db.get(User, user_id)
        if user is None:
            raise ValidationError("User not found")
        target = "suspended" if suspended else "active"
        if user.status == target:
            raise StateConflictError(f"User is already {target}")

        user.status = target
        user.suspended_at = utcnow() if suspended else None
        await db.commit()

        await self.audit.log_admin_action(
            db,
            actor.id,
            "suspend_user" if suspended else "reinstate_user",
            target_user_id=user_id,
            notes=reason,
        )
        logger.warning(f"User {user_id} set to {target} by admin {actor.id}")
        return OperationResult.ok(user_id=user_id, status=target)

    # ==================== BOOKINGS ====================

    async def refund_booking(
        self,
        db: AsyncSession,
        actor: Actor,
        booking_id: UUID,
        amount_cents: int | None = None,
        reason: str | None = None,
    ) -> OperationResult:
        result = await self.bookings.refund_booking(db, actor, booking_id, amount_cents, reason)
        if result.success:
            await self.audit.log_admin_action(
                db,
                actor.id,
                "refund",
                target_booking_id=booking_id,
                notes=reason,
                details={"amount_cents": result.data["refund_amount_cents"]},
            )
        return result

    async def resolve_dispute(
        self,
        db: AsyncSession,
        actor: Actor,
        booking_id: UUID,
        refund_amount_cents: int = 0,
        notes: str | None = None,
    ) -> OperationResult:
        result = await self.bookings.resolve_dispute(db, actor, booking_id, refund_amount_cents, notes)
        if result.success:
            await self.audit.log_admin_action(
                db,
                actor.id,
                "resolve_dispute",
                target_booking_id=booking_id,
                notes=notes,
                details={"refund_amount_cents": refund_amount_cents},
            )
        return result


# Singleton instance
admin_service = AdminService()
