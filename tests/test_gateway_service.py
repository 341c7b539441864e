"""Tests for gateway routing and read-back reconciliation."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.config import settings
from app.core.exceptions import GatewayError, InvalidStateError, PaymentAlreadyCapturedError
from app.gateways.base import PaymentIntent
from app.gateways.sandbox import SandboxGateway
from app.gateways.stripe_gateway import StripeGateway
from app.services.gateway_service import GatewayService


def _intent(status: str) -> PaymentIntent:
    return PaymentIntent(id="pi_1", status=status, amount=7301)


@pytest.fixture
def adapter():
    adapter = MagicMock()
    adapter.capture = AsyncMock()
    adapter.cancel_authorization = AsyncMock()
    adapter.retrieve = AsyncMock()
    adapter.refund = AsyncMock()
    return adapter


class TestGatewaySelection:
    def test_sandbox_built_from_settings(self):
        service = GatewayService()

        assert isinstance(service.gateway, SandboxGateway)
        assert service.gateway is service.gateway

    def test_stripe_selected(self):
        with patch.object(settings, "payment_gateway", "stripe"):
            service = GatewayService()

            assert isinstance(service.gateway, StripeGateway)

    def test_sandbox_refused_in_production(self):
        with patch.object(settings, "environment", "production"):
            with pytest.raises(RuntimeError):
                GatewayService().gateway


class TestCaptureReconciliation:
    async def test_capture_error_with_succeeded_read_back(self, adapter):
        adapter.capture.side_effect = GatewayError("timeout")
        adapter.retrieve.return_value = _intent("succeeded")

        intent = await GatewayService(adapter).capture_hold("pi_1")

        assert intent.status == "succeeded"

    async def test_capture_error_with_uncaptured_read_back(self, adapter):
        adapter.capture.side_effect = GatewayError("timeout")
        adapter.retrieve.return_value = _intent("requires_capture")

        with pytest.raises(GatewayError) as exc:
            await GatewayService(adapter).capture_hold("pi_1")

        assert exc.value.detail == "timeout"

    async def test_invalid_state_not_read_back(self, adapter):
        adapter.capture.side_effect = InvalidStateError(intent_status="canceled")

        with pytest.raises(InvalidStateError):
            await GatewayService(adapter).capture_hold("pi_1")

        adapter.retrieve.assert_not_awaited()

    async def test_unverifiable_capture(self, adapter):
        adapter.capture.side_effect = GatewayError("timeout")
        adapter.retrieve.side_effect = GatewayError("still down")

        with pytest.raises(GatewayError) as exc:
            await GatewayService(adapter).capture_hold("pi_1")

        assert "Could not verify payment status" in exc.value.detail


class TestReleaseReconciliation:
    async def test_already_cancelled_counts_as_released(self, adapter):
        adapter.cancel_authorization.side_effect = GatewayError("already canceled")
        adapter.retrieve.return_value = _intent("canceled")

        intent = await GatewayService(adapter).release_hold("pi_1")

        assert intent.status == "canceled"

    async def test_succeeded_intent_needs_refund(self, adapter):
        adapter.cancel_authorization.side_effect = GatewayError("cannot cancel")
        adapter.retrieve.return_value = _intent("succeeded")

        with pytest.raises(PaymentAlreadyCapturedError) as exc:
            await GatewayService(adapter).release_hold("pi_1")

        assert "refund" in exc.value.detail

    async def test_other_status_reraises(self, adapter):
        adapter.cancel_authorization.side_effect = GatewayError("processing")
        adapter.retrieve.return_value = _intent("processing")

        with pytest.raises(GatewayError) as exc:
            await GatewayService(adapter).release_hold("pi_1")

        assert exc.value.detail == "processing"


class TestSandboxLifecycle:
    async def test_hold_capture_refund(self, sandbox):
        service = GatewayService(sandbox)
        intent = await service.open_hold(7301, None, {"booking_id": "b-1"})
        sandbox.confirm(intent.id)

        captured = await service.capture_hold(intent.id)
        refund = await service.refund_payment(intent.id, 3651)
        rest = await service.refund_payment(intent.id)

        assert captured.status == "succeeded"
        assert refund.amount == 3651
        assert rest.amount == 3650
        with pytest.raises(GatewayError):
            await service.refund_payment(intent.id, 1)

    async def test_release_after_capture_needs_refund(self, sandbox):
        service = GatewayService(sandbox)
        intent = await service.open_hold(4000, None, {})
        sandbox.confirm(intent.id)
        await service.capture_hold(intent.id)

        with pytest.raises(PaymentAlreadyCapturedError):
            await service.release_hold(intent.id)
