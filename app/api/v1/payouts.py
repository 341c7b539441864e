"""Coach payout account endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_actor, get_db, unwrap
from app.core.permissions import Actor
from app.schemas.admin import PayoutAccountResponse
from app.services.payout_service import payout_service

router = APIRouter()


@router.post("/account", response_model=PayoutAccountResponse)
async def start_payout_onboarding(
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> PayoutAccountResponse:
    """Create the coach's payout account (if needed) and return the onboarding link."""
    data = unwrap(await payout_service.start_onboarding(db, actor))
    return PayoutAccountResponse(**data)


@router.get("/status", response_model=PayoutAccountResponse)
async def payout_status(
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> PayoutAccountResponse:
    """Refresh and return whether payouts are enabled."""
    data = unwrap(await payout_service.refresh_status(db, actor))
    return PayoutAccountResponse(**data)
