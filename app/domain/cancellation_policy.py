"""Cancellation policy domain logic.

Refund tiers by time remaining until the session starts:
- 24h or more: full refund
- 12h up to 24h: 50% refund
- under 12h: no refund
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from app.config import settings


def hours_until(start: datetime, now: datetime) -> Decimal:
    """Exact hours between ``now`` and ``start`` (negative once started)."""
    return Decimal(str((start - now).total_seconds())) / Decimal("3600")


def calculate_refund_percentage(scheduled_start_at: datetime, cancelled_at: datetime) -> Decimal:
    """Calculate refund percentage based on time to session.

    Args:
        scheduled_start_at: Session start
        cancelled_at: Moment of cancellation

    Returns:
        Decimal: Refund percentage (0-100)
    """
    hours = hours_until(scheduled_start_at, cancelled_at)
    if hours >= settings.full_refund_hours:
        return Decimal("100")
    if hours >= settings.partial_refund_hours:
        return Decimal(settings.partial_refund_percent)
    return Decimal("0")


def calculate_refund_amount(
    scheduled_start_at: datetime,
    cancelled_at: datetime,
    amount_paid_cents: int,
) -> int:
    """Calculate refund amount in cents.

    Args:
        scheduled_start_at: Session start
        cancelled_at: Moment of cancellation
        amount_paid_cents: Amount the client was charged

    Returns:
        int: Refund amount in cents
    """
    refund_pct = calculate_refund_percentage(scheduled_start_at, cancelled_at)
    refund_amount = (Decimal(amount_paid_cents) * refund_pct / Decimal("100")).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(refund_amount)


def get_policy_description() -> str:
    """Get human-readable policy description."""
    return (
        f"Full refund up to {settings.full_refund_hours} hours before the session. "
        f"{settings.partial_refund_percent}% refund if cancelled "
        f"{settings.partial_refund_hours}-{settings.full_refund_hours} hours before. "
        f"No refund if cancelled less than {settings.partial_refund_hours} hours before."
    )
