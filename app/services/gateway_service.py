"""Payment gateway service.

Routes payment operations to the configured gateway adapter and owns the
reconciliation step: when a mutation fails, the intent is read back and the
read-back status alone decides what happens next.
No booking logic here - only gateway coordination.
"""

import logging

from app.config import settings
from app.core.exceptions import (
    GatewayError,
    InvalidStateError,
    PaymentAlreadyCapturedError,
)
from app.domain.payment_state import IntentStatus
from app.gateways.base import (
    GatewayType,
    PaymentGateway,
    PaymentIntent,
    RefundResult,
    TransferResult,
)
from app.gateways.sandbox import SandboxGateway
from app.gateways.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


def _is_production() -> bool:
    """Check if running in production environment."""
    return settings.environment == "production"


def _assert_gateway_allowed(gateway_type: GatewayType) -> None:
    """Block the in-memory sandbox in production.

    Raises:
        RuntimeError: If the sandbox gateway is configured in production
    """
    if gateway_type == GatewayType.SANDBOX and _is_production():
        raise RuntimeError(
            "Cannot use the sandbox payment gateway in production. Set PAYMENT_GATEWAY=stripe."
        )


def _build_gateway(gateway_type: str | GatewayType) -> PaymentGateway:
    gateway_type = GatewayType(gateway_type)
    _assert_gateway_allowed(gateway_type)
    if gateway_type == GatewayType.STRIPE:
        return StripeGateway()
    return SandboxGateway(auto_confirm=settings.environment == "development")


class GatewayService:
    """Service for managing payment gateway operations."""

    def __init__(self, gateway: PaymentGateway | None = None):
        self._gateway = gateway

    @property
    def gateway(self) -> PaymentGateway:
        """Configured gateway, created on first use."""
        if self._gateway is None:
            self._gateway = _build_gateway(settings.payment_gateway)
        return self._gateway

    # ==================== HOLDS ====================

    async def open_hold(
        self,
        amount_cents: int,
        destination_account: str | None,
        metadata: dict[str, str],
        application_fee_cents: int | None = None,
    ) -> PaymentIntent:
        """Open a manual-capture authorization hold."""
        intent = await self.gateway.create_authorization(
            amount_cents=amount_cents,
            destination_account=destination_account,
            metadata=metadata,
            application_fee_cents=application_fee_cents,
        )
        logger.info(f"Opened hold {intent.id} for {amount_cents} cents ({metadata})")
        return intent

    async def read_back(self, intent_id: str) -> PaymentIntent:
        return await self.gateway.retrieve(intent_id)

    async def capture_hold(self, intent_id: str) -> PaymentIntent:
        """Capture a hold.

        A non-capturable status is surfaced as ``InvalidStateError``. If the
        capture call itself errors, the intent is read back: a succeeded
        intent means the capture went through, anything else re-raises.
        """
        try:
            return await self.gateway.capture(intent_id)
        except InvalidStateError:
            raise
        except GatewayError as exc:
            intent = await self._read_back_after_failure(intent_id, "capture")
            if intent.status == IntentStatus.SUCCEEDED:
                logger.warning(f"Capture of {intent_id} errored but intent has succeeded")
                return intent
            raise exc

    async def release_hold(self, intent_id: str) -> PaymentIntent:
        """Cancel a hold.

        If the cancel errors, the intent is read back: already cancelled is
        treated as done, already succeeded means the payment must be refunded
        instead, anything else re-raises.

        Raises:
            PaymentAlreadyCapturedError: If the payment already succeeded
            GatewayError: If the hold could not be released or verified
        """
        try:
            return await self.gateway.cancel_authorization(intent_id)
        except GatewayError as exc:
            intent = await self._read_back_after_failure(intent_id, "cancel")
            if intent.status == IntentStatus.CANCELED:
                logger.info(f"Hold {intent_id} was already cancelled")
                return intent
            if intent.status == IntentStatus.SUCCEEDED:
                raise PaymentAlreadyCapturedError()
            raise exc

    async def _read_back_after_failure(self, intent_id: str, operation: str) -> PaymentIntent:
        try:
            return await self.gateway.retrieve(intent_id)
        except GatewayError:
            logger.exception(f"Could not read back {intent_id} after failed {operation}")
            raise GatewayError(
                "Could not verify payment status. Please try again or contact support."
            )

    # ==================== REFUNDS & PAYOUTS ====================

    async def refund_payment(
        self,
        intent_id: str,
        amount_cents: int | None = None,
        reverse_transfer: bool = False,
    ) -> RefundResult:
        """Refund a captured payment, fully or partially."""
        refund = await self.gateway.refund(
            intent_id,
            amount_cents=amount_cents,
            reverse_transfer=reverse_transfer,
        )
        logger.info(f"Refunded {refund.amount} cents on {intent_id} ({refund.refund_id})")
        return refund

    async def transfer_payout(
        self,
        amount_cents: int,
        destination_account: str,
        metadata: dict[str, str],
    ) -> TransferResult:
        return await self.gateway.transfer(amount_cents, destination_account, metadata)

    async def create_payout_account(self, email: str, owner_id: str) -> str:
        return await self.gateway.create_payout_account(email, owner_id)

    async def create_onboarding_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        return await self.gateway.create_onboarding_link(account_id, refresh_url, return_url)

    async def is_onboarded(self, account_id: str) -> bool:
        return await self.gateway.is_onboarded(account_id)


# Singleton instance
gateway_service = GatewayService()
