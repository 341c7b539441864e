"""Coach payout account onboarding."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import ValidationError
from app.core.permissions import Actor, UserRole, require_role
from app.core.results import OperationResult, run_operation
from app.models.user import CoachProfile
from app.services.gateway_service import GatewayService, gateway_service

logger = logging.getLogger(__name__)


class PayoutService:
    """Service for creating and checking a coach's connected payout account."""

    def __init__(self, gateway: GatewayService | None = None) -> None:
        self.gateway = gateway or gateway_service

    async def start_onboarding(self, db: AsyncSession, actor: Actor) -> OperationResult:
        """Create the coach's payout account if needed and return an onboarding link."""
        return await run_operation(db, "start_payout_onboarding", actor.id, lambda: self._start(db, actor))

    async def _start(self, db: AsyncSession, actor: Actor) -> OperationResult:
        profile = await self._get_profile(db, actor)
        if not profile.payout_account_id:
            profile.payout_account_id = await self.gateway.create_payout_account(
                profile.user.email, str(actor.id)
            )
            await db.commit()
            logger.info(f"Created payout account {profile.payout_account_id} for coach {actor.id}")

        url = await self.gateway.create_onboarding_link(
            profile.payout_account_id,
            refresh_url=f"{settings.app_base_url}/dashboard/payouts?refresh=1",
            return_url=f"{settings.app_base_url}/dashboard/payouts?done=1",
        )
        return OperationResult.ok(account_id=profile.payout_account_id, onboarding_url=url)

    async def refresh_status(self, db: AsyncSession, actor: Actor) -> OperationResult:
        """Re-check whether the processor has enabled payouts for the coach."""
        return await run_operation(db, "refresh_payout_status", actor.id, lambda: self._refresh(db, actor))

    async def _refresh(self, db: AsyncSession, actor: Actor) -> OperationResult:
        profile = await self._get_profile(db, actor)
        if not profile.payout_account_id:
            return OperationResult.ok(account_id=None, payouts_enabled=False)

        enabled = await self.gateway.is_onboarded(profile.payout_account_id)
        if enabled != profile.payouts_enabled:
            profile.payouts_enabled = enabled
            await db.commit()
            logger.info(f"Coach {actor.id} payouts_enabled -> {enabled}")
        return OperationResult.ok(account_id=profile.payout_account_id, payouts_enabled=enabled)

    async def _get_profile(self, db: AsyncSession, actor: Actor) -> CoachProfile:
        require_role(actor, UserRole.COACH)
        profile = await db.get(CoachProfile, actor.id)
        if profile is None:
            raise ValidationError("Create a coach profile before setting up payouts")
        return profile


# Singleton instance
payout_service = PayoutService()
