"""Base payment gateway interface.

All gateway adapters must implement this interface.
Business logic should NOT live in adapters - only processor communication.
Adapters never retry; callers coordinate retries with the audit log.

Failures raise ``GatewayError``; a non-capturable intent raises
``InvalidStateError``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum


class GatewayType(str, Enum):
    """Supported payment gateways."""

    STRIPE = "stripe"
    SANDBOX = "sandbox"


@dataclass
class PaymentIntent:
    """Processor-side view of a manual-capture payment."""

    id: str
    status: str
    amount: int
    amount_received: int = 0
    client_secret: str | None = None
    metadata: dict = field(default_factory=dict)


@dataclass
class RefundResult:
    """Result of a refund operation."""

    refund_id: str
    status: str
    amount: int


@dataclass
class TransferResult:
    """Result of a transfer to a payout account."""

    transfer_id: str
    amount: int
    destination: str


class PaymentGateway(ABC):
    """Abstract base class for payment gateways."""

    @property
    @abstractmethod
    def gateway_type(self) -> GatewayType:
        """Return the gateway type."""

    @abstractmethod
    async def create_authorization(
        self,
        amount_cents: int,
        destination_account: str | None,
        metadata: dict[str, str],
        application_fee_cents: int | None = None,
    ) -> PaymentIntent:
        """Open a manual-capture hold.

        Args:
            amount_cents: Amount to hold
            destination_account: Payout account receiving the funds on capture,
                or None to keep funds on the platform until a later transfer
            metadata: Booking/participant/coach identifiers for reconciliation
            application_fee_cents: Platform share when routing to a destination

        Returns:
            PaymentIntent with id and client secret
        """

    @abstractmethod
    async def retrieve(self, intent_id: str) -> PaymentIntent:
        """Read back the current state of an intent."""

    @abstractmethod
    async def capture(self, intent_id: str) -> PaymentIntent:
        """Capture a hold; only valid while the intent requires capture."""

    @abstractmethod
    async def cancel_authorization(self, intent_id: str) -> PaymentIntent:
        """Release a hold."""

    @abstractmethod
    async def refund(
        self,
        intent_id: str,
        amount_cents: int | None = None,
        reverse_transfer: bool = False,
    ) -> RefundResult:
        """Refund a captured payment, fully or partially."""

    @abstractmethod
    async def create_payout_account(self, email: str, owner_id: str) -> str:
        """Create a connected payout account and return its id."""

    @abstractmethod
    async def create_onboarding_link(
        self,
        account_id: str,
        refresh_url: str,
        return_url: str,
    ) -> str:
        """Create a hosted onboarding URL for a payout account."""

    @abstractmethod
    async def is_onboarded(self, account_id: str) -> bool:
        """Whether the account can accept charges and receive payouts."""

    @abstractmethod
    async def transfer(
        self,
        amount_cents: int,
        destination_account: str,
        metadata: dict[str, str],
    ) -> TransferResult:
        """Move platform funds to a payout account."""
