"""Admin and payout schemas."""

from pydantic import BaseModel, Field


class CoachReview(BaseModel):
    notes: str | None = Field(None, max_length=2000)


class UserStatusChange(BaseModel):
    reason: str | None = Field(None, max_length=2000)


class AdminRefund(BaseModel):
    """Refund request; the whole remaining charge when amount is omitted."""

    amount_cents: int | None = Field(None, gt=0)
    reason: str | None = Field(None, max_length=2000)


class DisputeResolution(BaseModel):
    refund_amount_cents: int = Field(default=0, ge=0)
    notes: str | None = Field(None, max_length=2000)


class PayoutAccountResponse(BaseModel):
    account_id: str | None
    onboarding_url: str | None = None
    payouts_enabled: bool | None = None
