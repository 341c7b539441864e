"""Pricing calculation service.

The client pays a grossed-up amount so that, after the processor takes its
percentage + fixed fee from the gross charge and the platform takes its
percentage of what remains, the coach receives their hourly rate for the
session. Every amount is an integer number of cents and

    client_pays == coach_payout + platform_fee + processor_fee

holds exactly.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from app.config import settings

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class PricingBreakdown:
    """Split of one charge, in cents."""

    client_pays_cents: int
    platform_fee_cents: int
    processor_fee_cents: int
    coach_payout_cents: int
    platform_fee_percent: Decimal

    @property
    def platform_revenue_cents(self) -> int:
        """Everything the platform keeps out of the charge (platform + processor fee)."""
        return self.platform_fee_cents + self.processor_fee_cents


def _to_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_cents(amount_cents: int) -> str:
    """Format cents as dollars for display, e.g. 7301 -> "$73.01"."""
    return f"${Decimal(amount_cents) / HUNDRED:,.2f}"


class PricingService:
    """Service for calculating booking prices, fees and payouts."""

    def __init__(
        self,
        processor_percent: Decimal | float | None = None,
        processor_fixed_cents: int | None = None,
    ) -> None:
        self.processor_rate = Decimal(
            str(settings.processor_fee_percent if processor_percent is None else processor_percent)
        ) / HUNDRED
        self.processor_fixed_cents = Decimal(
            settings.processor_fee_fixed_cents if processor_fixed_cents is None else processor_fixed_cents
        )

    def resolve_platform_fee(self, custom_percent: Decimal | float | None) -> Decimal:
        """Per-coach override if set, otherwise the platform default."""
        if custom_percent is None:
            return Decimal(str(settings.default_platform_fee_percent))
        return Decimal(str(custom_percent))

    def calculate_booking_pricing(
        self,
        hourly_rate_cents: int,
        duration_minutes: int,
        platform_fee_percent: Decimal | float | None = None,
    ) -> PricingBreakdown:
        """Price a session from the coach's desired hourly rate.

        Args:
            hourly_rate_cents: Coach's rate per hour, in cents
            duration_minutes: Session length
            platform_fee_percent: Platform fee (0-100); default when None

        Returns:
            PricingBreakdown in cents

        Raises:
            ValueError: On non-positive rate/duration or fee outside 0-100
        """
        if hourly_rate_cents <= 0:
            raise ValueError("Hourly rate must be positive")
        if duration_minutes <= 0:
            raise ValueError("Duration must be positive")
        fee_percent = self.resolve_platform_fee(platform_fee_percent)
        if not (Decimal("0") <= fee_percent <= HUNDRED):
            raise ValueError("Platform fee must be between 0 and 100 percent")

        p = fee_percent / HUNDRED
        s = self.processor_rate
        f = self.processor_fixed_cents
        desired_payout = Decimal(hourly_rate_cents) * Decimal(duration_minutes) / Decimal("60")

        if p < 1:
            client_pays = (desired_payout + f * (1 - p)) / ((1 - s) * (1 - p))
        else:
            # Gross-up is undefined at 100%; only the processor fee is passed on
            client_pays = (desired_payout + f) / (1 - s)

        return self.calculate_coach_earnings(_to_cents(client_pays), fee_percent)

    def calculate_coach_earnings(
        self,
        gross_cents: int,
        platform_fee_percent: Decimal | float | None = None,
    ) -> PricingBreakdown:
        """Split a known gross charge into processor fee, platform fee and payout.

        Used directly for group pricing where the per-person price is the
        client-facing amount.
        """
        if gross_cents <= 0:
            raise ValueError("Gross amount must be positive")
        fee_percent = self.resolve_platform_fee(platform_fee_percent)
        if not (Decimal("0") <= fee_percent <= HUNDRED):
            raise ValueError("Platform fee must be between 0 and 100 percent")

        processor_fee = min(
            gross_cents,
            _to_cents(Decimal(gross_cents) * self.processor_rate + self.processor_fixed_cents),
        )
        net = gross_cents - processor_fee
        platform_fee = _to_cents(Decimal(net) * fee_percent / HUNDRED)
        coach_payout = net - platform_fee

        return PricingBreakdown(
            client_pays_cents=gross_cents,
            platform_fee_cents=platform_fee,
            processor_fee_cents=processor_fee,
            coach_payout_cents=coach_payout,
            platform_fee_percent=fee_percent,
        )

    def validate_payment_amount(
        self,
        expected_cents: int,
        received_cents: int,
        tolerance_cents: int = 1,
    ) -> bool:
        """Check a processor-reported amount against the expected charge."""
        return abs(expected_cents - received_cents) <= tolerance_cents


pricing_service = PricingService()
