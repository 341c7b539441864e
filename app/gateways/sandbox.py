"""In-process sandbox gateway for development.

Mimics the processor's manual-capture lifecycle in memory so the booking
flows can run end to end without processor credentials. Refused in
production by the gateway service.
"""

import uuid

from app.core.exceptions import GatewayError, InvalidStateError
from app.domain.payment_state import IntentStatus
from app.gateways.base import (
    GatewayType,
    PaymentGateway,
    PaymentIntent,
    RefundResult,
    TransferResult,
)

CANCELLABLE_STATUSES = {
    IntentStatus.REQUIRES_PAYMENT_METHOD.value,
    IntentStatus.REQUIRES_CONFIRMATION.value,
    IntentStatus.REQUIRES_ACTION.value,
    IntentStatus.REQUIRES_CAPTURE.value,
}


class SandboxGateway(PaymentGateway):
    """Manual-capture intents, refunds and payout accounts held in memory.

    With ``auto_confirm`` the client's card step is skipped and new holds
    start in ``requires_capture``.
    """

    def __init__(self, auto_confirm: bool = False) -> None:
        self.auto_confirm = auto_confirm
        self.intents: dict[str, PaymentIntent] = {}
        self.refunded: dict[str, int] = {}
        self.refunds: list[RefundResult] = []
        self.transfers: list[TransferResult] = []
        self.accounts: dict[str, bool] = {}

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.SANDBOX

    def _get(self, intent_id: str) -> PaymentIntent:
        intent = self.intents.get(intent_id)
        if intent is None:
            raise GatewayError(f"No such payment intent: '{intent_id}'")
        return intent

    def confirm(self, intent_id: str) -> PaymentIntent:
        """Simulate the client completing card entry on the hold."""
        intent = self._get(intent_id)
        if intent.status not in (
            IntentStatus.REQUIRES_PAYMENT_METHOD,
            IntentStatus.REQUIRES_CONFIRMATION,
            IntentStatus.REQUIRES_ACTION,
        ):
            raise InvalidStateError(
                f"Cannot confirm payment - status is '{intent.status}'",
                intent_status=intent.status,
            )
        intent.status = IntentStatus.REQUIRES_CAPTURE.value
        return intent

    async def create_authorization(
        self,
        amount_cents: int,
        destination_account: str | None,
        metadata: dict[str, str],
        application_fee_cents: int | None = None,
    ) -> PaymentIntent:
        if amount_cents <= 0:
            raise GatewayError("Amount must be positive")
        if destination_account is not None and destination_account not in self.accounts:
            raise GatewayError(f"No such destination account: '{destination_account}'")

        intent_id = f"pi_sandbox_{uuid.uuid4().hex[:24]}"
        intent = PaymentIntent(
            id=intent_id,
            status=(
                IntentStatus.REQUIRES_CAPTURE.value
                if self.auto_confirm
                else IntentStatus.REQUIRES_PAYMENT_METHOD.value
            ),
            amount=amount_cents,
            client_secret=f"{intent_id}_secret",
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        return intent

    async def retrieve(self, intent_id: str) -> PaymentIntent:
        return self._get(intent_id)

    async def capture(self, intent_id: str) -> PaymentIntent:
        intent = self._get(intent_id)
        if intent.status != IntentStatus.REQUIRES_CAPTURE:
            raise InvalidStateError(
                f"Cannot capture payment - status is '{intent.status}'. "
                "Client may not have completed payment.",
                intent_status=intent.status,
            )
        intent.status = IntentStatus.SUCCEEDED.value
        intent.amount_received = intent.amount
        return intent

    async def cancel_authorization(self, intent_id: str) -> PaymentIntent:
        intent = self._get(intent_id)
        if intent.status not in CANCELLABLE_STATUSES:
            raise GatewayError(
                f"You cannot cancel this PaymentIntent because it has a status of {intent.status}"
            )
        intent.status = IntentStatus.CANCELED.value
        return intent

    async def refund(
        self,
        intent_id: str,
        amount_cents: int | None = None,
        reverse_transfer: bool = False,
    ) -> RefundResult:
        intent = self._get(intent_id)
        if intent.status != IntentStatus.SUCCEEDED:
            raise GatewayError(f"Cannot refund payment with status '{intent.status}'")
        remaining = intent.amount_received - self.refunded.get(intent_id, 0)
        amount = remaining if amount_cents is None else amount_cents
        if amount <= 0 or amount > remaining:
            raise GatewayError(
                f"Refund amount {amount} exceeds refundable balance {remaining}"
            )
        self.refunded[intent_id] = self.refunded.get(intent_id, 0) + amount
        result = RefundResult(
            refund_id=f"re_sandbox_{uuid.uuid4().hex[:24]}",
            status="succeeded",
            amount=amount,
        )
        self.refunds.append(result)
        return result

    async def create_payout_account(self, email: str, owner_id: str) -> str:
        account_id = f"acct_sandbox_{uuid.uuid4().hex[:16]}"
        self.accounts[account_id] = True
        return account_id

    async def create_onboarding_link(
        self,
        account_id: str,
        refresh_url: str,
        return_url: str,
    ) -> str:
        if account_id not in self.accounts:
            raise GatewayError(f"No such account: '{account_id}'")
        return f"{return_url}?account={account_id}"

    async def is_onboarded(self, account_id: str) -> bool:
        return self.accounts.get(account_id, False)

    async def transfer(
        self,
        amount_cents: int,
        destination_account: str,
        metadata: dict[str, str],
    ) -> TransferResult:
        if destination_account not in self.accounts:
            raise GatewayError(f"No such destination account: '{destination_account}'")
        result = TransferResult(
            transfer_id=f"tr_sandbox_{uuid.uuid4().hex[:24]}",
            amount=amount_cents,
            destination=destination_account,
        )
        self.transfers.append(result)
        return result
