"""Tests for SendGrid email delivery."""

from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import httpx
import pytest

from app.config import settings
from app.services.notification_service import NotificationService, describe_session


@pytest.fixture
def http_client():
    client = MagicMock()
    client.post = AsyncMock(return_value=MagicMock(status_code=202, text=""))
    return client


@pytest.fixture
def service(http_client):
    service = NotificationService()
    service._http_client = http_client
    return service


def _booking(location=None):
    return SimpleNamespace(
        id=uuid4(),
        scheduled_start_at=datetime(2030, 3, 4, 9, 30, tzinfo=UTC),
        duration_minutes=60,
        location=location,
    )


class TestDescribeSession:
    def test_with_location(self):
        text = describe_session(_booking({"name": "Riverside Courts", "address": "12 Park Lane"}))

        assert text == "Monday, March 04, 2030 at 09:30 UTC (60 min) - Riverside Courts, 12 Park Lane"

    def test_without_location(self):
        assert describe_session(_booking()).endswith("(60 min)")


class TestSendEmail:
    async def test_disabled_without_api_key(self, service, http_client):
        with patch.object(settings, "sendgrid_api_key", None):
            sent = await service.send_email("a@example.com", "Hi", "<p>Hi</p>")

        assert sent is False
        http_client.post.assert_not_awaited()

    async def test_payload(self, service, http_client):
        with patch.object(settings, "sendgrid_api_key", "SG.test"):
            sent = await service.send_email("a@example.com", "Hi", "<p>Hi</p>", "Hi")

        assert sent is True
        kwargs = http_client.post.call_args.kwargs
        assert kwargs["headers"]["Authorization"] == "Bearer SG.test"
        assert kwargs["json"]["personalizations"] == [{"to": [{"email": "a@example.com"}]}]
        assert [part["type"] for part in kwargs["json"]["content"]] == ["text/plain", "text/html"]

    async def test_rejected_response(self, service, http_client):
        http_client.post.return_value = MagicMock(status_code=400, text="bad request")

        with patch.object(settings, "sendgrid_api_key", "SG.test"):
            assert await service.send_email("a@example.com", "Hi", "<p>Hi</p>") is False

    async def test_transport_error_not_raised(self, service, http_client):
        http_client.post.side_effect = httpx.ConnectError("connection refused")

        with patch.object(settings, "sendgrid_api_key", "SG.test"):
            assert await service.send_email("a@example.com", "Hi", "<p>Hi</p>") is False


class TestBookingNotifications:
    async def test_final_payment_reminder(self, service, http_client):
        booking = _booking()

        with patch.object(settings, "sendgrid_api_key", "SG.test"):
            await service.notify_payment_reminder("a@example.com", booking, 7301, final=True)

        payload = http_client.post.call_args.kwargs["json"]
        assert payload["subject"] == "Final Reminder: Complete Your Payment"
        text = payload["content"][0]["value"]
        assert "$73.01" in text
        assert f"{settings.payment_final_reminder_minutes} minutes" in text
        assert f"/dashboard/bookings/{booking.id}/pay" in text

    async def test_html_is_escaped(self, service, http_client):
        with patch.object(settings, "sendgrid_api_key", "SG.test"):
            await service.notify_coach_reviewed("c@example.com", False, "<script>x</script>")

        html = http_client.post.call_args.kwargs["json"]["content"][1]["value"]
        assert "<script>" not in html
        assert "&lt;script&gt;" in html
