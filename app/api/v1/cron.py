"""Scheduled-task trigger endpoints.

An external scheduler calls these with ``Authorization: Bearer <CRON_SECRET>``
when the Celery beat worker is not running.
"""

from typing import Annotated, Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db, require_cron
from app.services.deadline_service import deadline_service

router = APIRouter(dependencies=[Depends(require_cron)])


@router.post("/payment-deadlines")
async def run_payment_deadlines(db: Annotated[AsyncSession, Depends(get_db)]) -> dict[str, Any]:
    """Send payment reminders and expire unpaid bookings."""
    return await deadline_service.process_payment_deadlines(db)


@router.post("/expired-holds")
async def run_expired_holds(db: Annotated[AsyncSession, Depends(get_db)]) -> dict[str, Any]:
    return await deadline_service.expire_participant_holds(db)


@router.post("/locks")
async def run_lock_cleanup(db: Annotated[AsyncSession, Depends(get_db)]) -> dict[str, Any]:
    return await deadline_service.cleanup_stale_locks(db)


@router.post("/auto-complete")
async def run_auto_complete(db: Annotated[AsyncSession, Depends(get_db)]) -> dict[str, Any]:
    return await deadline_service.auto_complete_bookings(db)
