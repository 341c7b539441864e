"""HTTP-level tests: authentication, the cron triggers, booking routes and webhooks."""

from unittest.mock import AsyncMock, patch

import httpx
import pytest
import stripe
from sqlalchemy import select

from app.api.deps import get_db
from app.config import settings
from app.core.security import create_access_token
from app.main import app
from app.models.payment import BookingPayment
from app.models.user import CoachProfile
from tests.helpers import LOCATION, actor_for, session_window

CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


@pytest.fixture
async def api(db, booking_service, monkeypatch):
    async def _db_override():
        yield db

    monkeypatch.setattr("app.api.v1.bookings.booking_service", booking_service)
    app.dependency_overrides[get_db] = _db_override
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def _auth(user) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}


def _booking_payload(coach_id) -> dict:
    start, end = session_window()
    return {
        "coach_id": str(coach_id),
        "scheduled_start_at": start.isoformat(),
        "scheduled_end_at": end.isoformat(),
        "location": LOCATION,
    }


class TestHealth:
    async def test_health(self, api):
        response = await api.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestCronTriggers:
    """Scheduler endpoints accept only the shared bearer secret."""

    async def test_missing_secret_rejected(self, api):
        response = await api.post(f"{settings.api_prefix}/cron/locks")

        assert response.status_code == 401

    async def test_wrong_secret_rejected(self, api):
        response = await api.post(
            f"{settings.api_prefix}/cron/locks", headers={"Authorization": "Bearer nope"}
        )

        assert response.status_code == 401

    @pytest.mark.parametrize(
        "path, method",
        [
            ("payment-deadlines", "process_payment_deadlines"),
            ("expired-holds", "expire_participant_holds"),
            ("locks", "cleanup_stale_locks"),
            ("auto-complete", "auto_complete_bookings"),
        ],
    )
    async def test_triggers_scan(self, api, path, method):
        summary = {"processed": 2, "cancelled": 1, "reminders": 0, "errors": []}
        with patch(f"app.api.v1.cron.deadline_service.{method}", AsyncMock(return_value=summary)) as scan:
            response = await api.post(f"{settings.api_prefix}/cron/{path}", headers=CRON_HEADERS)

        assert response.status_code == 200
        assert response.json() == summary
        scan.assert_awaited_once()

    async def test_lock_scan_runs_against_database(self, api):
        response = await api.post(f"{settings.api_prefix}/cron/locks", headers=CRON_HEADERS)

        assert response.status_code == 200
        assert response.json()["released"] == 0


class TestBookingRoutes:
    async def test_create_booking(self, api, client, coach):
        response = await api.post(
            f"{settings.api_prefix}/bookings", json=_booking_payload(coach.id), headers=_auth(client)
        )

        assert response.status_code == 201, response.text
        data = response.json()["data"]
        assert data["client_pays_cents"] == 7301
        assert data["status"] == "awaiting_payment"

    async def test_naive_datetimes_rejected(self, api, client, coach):
        payload = _booking_payload(coach.id)
        payload["scheduled_start_at"] = "2030-01-01T10:00:00"

        response = await api.post(f"{settings.api_prefix}/bookings", json=payload, headers=_auth(client))

        assert response.status_code == 422

    async def test_service_refusal_becomes_http_error(self, api, coach):
        response = await api.post(
            f"{settings.api_prefix}/bookings", json=_booking_payload(coach.id), headers=_auth(coach)
        )

        assert response.status_code == 403
        assert "not authorized" in response.json()["detail"]

    async def test_unauthenticated_request(self, api, coach):
        response = await api.post(f"{settings.api_prefix}/bookings", json=_booking_payload(coach.id))

        assert response.status_code in (401, 403)

    async def test_get_booking_visible_to_parties_only(self, api, make_user, client, coach):
        created = await api.post(
            f"{settings.api_prefix}/bookings", json=_booking_payload(coach.id), headers=_auth(client)
        )
        booking_id = created.json()["data"]["booking_id"]
        stranger = await make_user("client")

        as_coach = await api.get(f"{settings.api_prefix}/bookings/{booking_id}", headers=_auth(coach))
        as_stranger = await api.get(f"{settings.api_prefix}/bookings/{booking_id}", headers=_auth(stranger))

        assert as_coach.status_code == 200
        assert as_coach.json()["payment_status"] == "awaiting_client_payment"
        assert as_stranger.status_code == 403

    async def test_cancellation_policy(self, api):
        response = await api.get(f"{settings.api_prefix}/bookings/cancellation-policy")

        assert "24 hours" in response.json()["policy"]


WEBHOOK_HEADERS = {"Stripe-Signature": "t=1,v1=signed"}


def _event(event_type: str, data: dict) -> dict:
    return {"id": "evt_test", "type": event_type, "data": {"object": data}}


class TestStripeWebhook:
    """Signed processor events reconcile payout and payment state."""

    @pytest.fixture(autouse=True)
    def _webhook_secret(self, monkeypatch):
        monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_test")

    async def _post(self, api, event):
        with patch("stripe.Webhook.construct_event", return_value=event) as construct:
            response = await api.post(
                f"{settings.api_prefix}/webhooks/stripe", content=b"{}", headers=WEBHOOK_HEADERS
            )
        construct.assert_called_once_with(b"{}", "t=1,v1=signed", "whsec_test")
        return response

    async def test_unconfigured_secret(self, api, monkeypatch):
        monkeypatch.setattr(settings, "stripe_webhook_secret", None)

        response = await api.post(f"{settings.api_prefix}/webhooks/stripe", content=b"{}")

        assert response.status_code == 500

    async def test_bad_signature_rejected(self, api):
        error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=signed")
        with patch("stripe.Webhook.construct_event", side_effect=error):
            response = await api.post(
                f"{settings.api_prefix}/webhooks/stripe", content=b"{}", headers=WEBHOOK_HEADERS
            )

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid signature"

    async def test_malformed_payload_rejected(self, api):
        with patch("stripe.Webhook.construct_event", side_effect=ValueError("bad json")):
            response = await api.post(
                f"{settings.api_prefix}/webhooks/stripe", content=b"nope", headers=WEBHOOK_HEADERS
            )

        assert response.status_code == 400

    async def test_account_updated_enables_payouts(self, api, db, make_coach):
        coach = await make_coach(payouts_enabled=False)
        coach_id = coach.id
        profile = await db.get(CoachProfile, coach_id)
        account_id = profile.payout_account_id

        response = await self._post(
            api, _event("account.updated", {"id": account_id, "charges_enabled": True, "payouts_enabled": True})
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        profile = await db.get(CoachProfile, coach_id, populate_existing=True)
        assert profile.payouts_enabled is True

    async def test_account_restricted_disables_payouts(self, api, db, coach):
        coach_id = coach.id
        profile = await db.get(CoachProfile, coach_id)
        account_id = profile.payout_account_id

        await self._post(
            api, _event("account.updated", {"id": account_id, "charges_enabled": True, "payouts_enabled": False})
        )

        profile = await db.get(CoachProfile, coach_id, populate_existing=True)
        assert profile.payouts_enabled is False

    async def test_intent_event_upserts_payment(self, api, db, booking_service, client, coach):
        start, end = session_window()
        created = await booking_service.create_booking(db, actor_for(client), coach.id, start, end, LOCATION)
        booking_id = created.data["booking_id"]
        intent_id = created.data["payment_intent_id"]
        intent = {"id": intent_id, "amount": 7301, "metadata": {"booking_id": str(booking_id)}}

        response = await self._post(api, _event("payment_intent.succeeded", intent))

        assert response.status_code == 200
        result = await db.execute(
            select(BookingPayment)
            .where(BookingPayment.payment_intent_id == intent_id)
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one()
        assert payment.booking_id == booking_id
        assert payment.status == "captured"
        assert payment.amount_cents == 7301

    async def test_charge_refunded_records_amount(self, api, db, booking_service, client, coach):
        start, end = session_window()
        created = await booking_service.create_booking(db, actor_for(client), coach.id, start, end, LOCATION)
        booking_id = created.data["booking_id"]
        charge = {
            "id": "ch_test",
            "payment_intent": "pi_webhook_refund",
            "amount": 7301,
            "amount_refunded": 3650,
            "metadata": {"booking_id": str(booking_id)},
        }

        await self._post(api, _event("charge.refunded", charge))

        result = await db.execute(select(BookingPayment).where(BookingPayment.payment_intent_id == "pi_webhook_refund"))
        payment = result.scalar_one()
        assert payment.status == "refunded"
        assert payment.refunded_amount_cents == 3650

    async def test_unknown_event_acknowledged(self, api):
        response = await self._post(api, _event("customer.created", {"id": "cus_1"}))

        assert response.status_code == 200
