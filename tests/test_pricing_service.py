"""Tests for booking pricing and coach earnings."""

from decimal import Decimal

import pytest

from app.services.pricing_service import PricingService, format_cents


@pytest.fixture
def pricing() -> PricingService:
    return PricingService(processor_percent=Decimal("2.9"), processor_fixed_cents=30)


class TestCalculateBookingPricing:
    """Gross-up from the coach's hourly rate."""

    def test_one_hour_at_sixty_dollars(self, pricing):
        """A $60/h coach at 15% nets exactly $60 from a $73.01 charge."""
        breakdown = pricing.calculate_booking_pricing(6000, 60, Decimal("15"))

        assert breakdown.client_pays_cents == 7301
        assert breakdown.processor_fee_cents == 242
        assert breakdown.platform_fee_cents == 1059
        assert breakdown.coach_payout_cents == 6000
        assert breakdown.platform_revenue_cents == 1301

    @pytest.mark.parametrize("fee", [Decimal("0"), Decimal("15"), Decimal("32.5"), Decimal("100")])
    @pytest.mark.parametrize("rate,minutes", [(6000, 60), (4550, 45), (12000, 90), (2500, 30)])
    def test_amounts_always_sum_to_charge(self, pricing, fee, rate, minutes):
        breakdown = pricing.calculate_booking_pricing(rate, minutes, fee)

        assert (
            breakdown.coach_payout_cents + breakdown.platform_fee_cents + breakdown.processor_fee_cents
            == breakdown.client_pays_cents
        )

    def test_zero_fee_passes_on_processor_cost_only(self, pricing):
        breakdown = pricing.calculate_booking_pricing(6000, 60, Decimal("0"))

        assert breakdown.platform_fee_cents == 0
        assert breakdown.coach_payout_cents == 6000

    def test_full_fee_grosses_up_processor_fee_only(self, pricing):
        """At 100% the platform keeps everything after processing."""
        breakdown = pricing.calculate_booking_pricing(6000, 60, Decimal("100"))

        assert breakdown.coach_payout_cents == 0
        assert breakdown.client_pays_cents == 6210

    def test_default_fee_used_when_not_overridden(self, pricing):
        breakdown = pricing.calculate_booking_pricing(6000, 60, None)

        assert breakdown.platform_fee_percent == Decimal("15.0")

    @pytest.mark.parametrize(
        "rate,minutes,fee",
        [(0, 60, None), (-100, 60, None), (6000, 0, None), (6000, 60, Decimal("101")), (6000, 60, Decimal("-1"))],
    )
    def test_rejects_invalid_inputs(self, pricing, rate, minutes, fee):
        with pytest.raises(ValueError):
            pricing.calculate_booking_pricing(rate, minutes, fee)


class TestCalculateCoachEarnings:
    """Split of a known gross amount (group pricing)."""

    def test_split_of_group_gross(self, pricing):
        breakdown = pricing.calculate_coach_earnings(12000, Decimal("15"))

        # 12000 * 2.9% + 30 = 378; (12000 - 378) * 15% = 1743.3
        assert breakdown.processor_fee_cents == 378
        assert breakdown.platform_fee_cents == 1743
        assert breakdown.coach_payout_cents == 9879

    def test_processor_fee_never_exceeds_gross(self, pricing):
        breakdown = pricing.calculate_coach_earnings(20, Decimal("15"))

        assert breakdown.processor_fee_cents == 20
        assert breakdown.coach_payout_cents == 0

    def test_rejects_non_positive_gross(self, pricing):
        with pytest.raises(ValueError):
            pricing.calculate_coach_earnings(0)


class TestValidatePaymentAmount:
    def test_within_one_cent(self, pricing):
        assert pricing.validate_payment_amount(7301, 7300)
        assert pricing.validate_payment_amount(7301, 7302)

    def test_outside_tolerance(self, pricing):
        assert not pricing.validate_payment_amount(7301, 7299)


def test_format_cents():
    assert format_cents(7301) == "$73.01"
    assert format_cents(123456) == "$1,234.56"
