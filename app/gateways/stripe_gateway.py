"""Stripe payment gateway adapter."""

import asyncio
import logging
from typing import Any

import stripe

from app.config import settings
from app.core.exceptions import GatewayError, InvalidStateError
from app.domain.payment_state import IntentStatus
from app.gateways.base import (
    GatewayType,
    PaymentGateway,
    PaymentIntent,
    RefundResult,
    TransferResult,
)

logger = logging.getLogger(__name__)


def _to_intent(intent: Any) -> PaymentIntent:
    return PaymentIntent(
        id=intent.id,
        status=intent.status,
        amount=intent.amount,
        amount_received=getattr(intent, "amount_received", 0) or 0,
        client_secret=getattr(intent, "client_secret", None),
        metadata=dict(getattr(intent, "metadata", None) or {}),
    )


class StripeGateway(PaymentGateway):
    """Stripe implementation using manual-capture PaymentIntents and Connect."""

    def __init__(self, secret_key: str | None = None, currency: str | None = None):
        self.secret_key = secret_key or settings.stripe_secret_key
        self.currency = (currency or settings.stripe_currency).lower()

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.STRIPE

    async def _call(self, operation: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Run a blocking SDK call off the event loop, mapping SDK errors."""
        if not self.secret_key:
            raise GatewayError("Stripe not configured")
        stripe.api_key = self.secret_key
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except stripe.StripeError as e:
            message = getattr(e, "user_message", None) or str(e)
            logger.error(f"Stripe {operation} failed: {message}")
            raise GatewayError(f"Payment processor error during {operation}: {message}")

    async def create_authorization(
        self,
        amount_cents: int,
        destination_account: str | None,
        metadata: dict[str, str],
        application_fee_cents: int | None = None,
    ) -> PaymentIntent:
        """Create a manual-capture PaymentIntent."""
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": self.currency,
            "capture_method": "manual",
            "automatic_payment_methods": {"enabled": True},
            "metadata": metadata,
        }
        if destination_account:
            params["transfer_data"] = {"destination": destination_account}
            if application_fee_cents:
                params["application_fee_amount"] = application_fee_cents

        intent = await self._call("create authorization", stripe.PaymentIntent.create, **params)
        return _to_intent(intent)

    async def retrieve(self, intent_id: str) -> PaymentIntent:
        intent = await self._call("retrieve", stripe.PaymentIntent.retrieve, intent_id)
        return _to_intent(intent)

    async def capture(self, intent_id: str) -> PaymentIntent:
        """Capture after confirming the intent is still capturable.

        Capturing an already-captured or expired intent is not idempotent,
        so the status is read first.
        """
        current = await self.retrieve(intent_id)
        if current.status != IntentStatus.REQUIRES_CAPTURE:
            raise InvalidStateError(
                f"Cannot capture payment - status is '{current.status}'. "
                "Client may not have completed payment.",
                intent_status=current.status,
            )
        intent = await self._call("capture", stripe.PaymentIntent.capture, intent_id)
        return _to_intent(intent)

    async def cancel_authorization(self, intent_id: str) -> PaymentIntent:
        intent = await self._call("cancel", stripe.PaymentIntent.cancel, intent_id)
        return _to_intent(intent)

    async def refund(
        self,
        intent_id: str,
        amount_cents: int | None = None,
        reverse_transfer: bool = False,
    ) -> RefundResult:
        """Refund a captured PaymentIntent, fully when no amount is given."""
        params: dict[str, Any] = {"payment_intent": intent_id}
        if amount_cents is not None:
            params["amount"] = amount_cents
        if reverse_transfer:
            params["reverse_transfer"] = True

        refund = await self._call("refund", stripe.Refund.create, **params)
        if refund.status == "failed":
            raise GatewayError(f"Refund {refund.id} failed at the processor")
        return RefundResult(refund_id=refund.id, status=refund.status, amount=refund.amount)

    async def create_payout_account(self, email: str, owner_id: str) -> str:
        """Create an Express connected account for a coach."""
        account = await self._call(
            "create payout account",
            stripe.Account.create,
            type="express",
            country="US",
            email=email,
            capabilities={
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
            business_type="individual",
            metadata={"user_id": owner_id},
        )
        return account.id

    async def create_onboarding_link(
        self,
        account_id: str,
        refresh_url: str,
        return_url: str,
    ) -> str:
        link = await self._call(
            "create onboarding link",
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
        )
        return link.url

    async def is_onboarded(self, account_id: str) -> bool:
        account = await self._call("retrieve account", stripe.Account.retrieve, account_id)
        return bool(account.charges_enabled and account.payouts_enabled)

    async def transfer(
        self,
        amount_cents: int,
        destination_account: str,
        metadata: dict[str, str],
    ) -> TransferResult:
        transfer = await self._call(
            "transfer",
            stripe.Transfer.create,
            amount=amount_cents,
            currency=self.currency,
            destination=destination_account,
            metadata=metadata,
        )
        return TransferResult(
            transfer_id=transfer.id,
            amount=transfer.amount,
            destination=destination_account,
        )
