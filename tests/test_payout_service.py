"""Tests for coach payout account onboarding."""

from sqlalchemy import update

from app.models.user import CoachProfile
from app.services.payout_service import PayoutService
from tests.helpers import actor_for


class TestOnboarding:
    async def test_creates_account_once(self, db, gateway, sandbox, make_coach):
        service = PayoutService(gateway)
        coach = await make_coach(payouts_enabled=False)
        actor = actor_for(coach)
        await db.execute(update(CoachProfile).where(CoachProfile.user_id == actor.id).values(payout_account_id=None))
        await db.commit()
        await db.get(CoachProfile, actor.id, populate_existing=True)

        first = await service.start_onboarding(db, actor)
        second = await service.start_onboarding(db, actor)

        assert first.success, first.error
        assert first.data["account_id"].startswith("acct_sandbox_")
        assert first.data["account_id"] in first.data["onboarding_url"]
        assert second.data["account_id"] == first.data["account_id"]

    async def test_refresh_enables_payouts(self, db, gateway, make_coach):
        service = PayoutService(gateway)
        coach = await make_coach(payouts_enabled=False)
        actor = actor_for(coach)

        result = await service.refresh_status(db, actor)

        assert result.data["payouts_enabled"] is True
        profile = await db.get(CoachProfile, actor.id)
        assert profile.can_receive_payouts

    async def test_clients_have_no_payout_account(self, db, gateway, client):
        result = await PayoutService(gateway).start_onboarding(db, actor_for(client))

        assert result.status_code == 403
