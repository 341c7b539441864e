"""Admin panel endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_admin, get_db, unwrap
from app.core.permissions import Actor
from app.models.booking import Booking
from app.schemas.admin import AdminRefund, CoachReview, DisputeResolution, UserStatusChange
from app.schemas.booking import BookingActionResponse, BookingResponse
from app.services.admin_service import admin_service

router = APIRouter()


# ============ COACH APPROVALS ============


@router.post("/coaches/{coach_id}/approve", response_model=BookingActionResponse)
async def approve_coach(
    coach_id: UUID,
    request: CoachReview,
    admin: Annotated[Actor, Depends(get_current_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    """Approve a coach so they can take bookings."""
    result = await admin_service.review_coach(db, admin, coach_id, approve=True, notes=request.notes)
    return BookingActionResponse(data=unwrap(result))


@router.post("/coaches/{coach_id}/reject", response_model=BookingActionResponse)
async def reject_coach(
    coach_id: UUID,
    request: CoachReview,
    admin: Annotated[Actor, Depends(get_current_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    result = await admin_service.review_coach(db, admin, coach_id, approve=False, notes=request.notes)
    return BookingActionResponse(data=unwrap(result))


# ============ USER MANAGEMENT ============


@router.post("/users/{user_id}/suspend", response_model=BookingActionResponse)
async def suspend_user(
    user_id: UUID,
    request: UserStatusChange,
    admin: Annotated[Actor, Depends(get_current_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    result = await admin_service.set_user_suspended(db, admin, user_id, True, request.reason)
    return BookingActionResponse(data=unwrap(result))


@router.post("/users/{user_id}/reinstate", response_model=BookingActionResponse)
async def reinstate_user(
    user_id: UUID,
    request: UserStatusChange,
    admin: Annotated[Actor, Depends(get_current_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    result = await admin_service.set_user_suspended(db, admin, user_id, False, request.reason)
    return BookingActionResponse(data=unwrap(result))


# ============ BOOKINGS ============


@router.get("/bookings/disputed", response_model=list[BookingResponse])
async def list_disputed_bookings(
    admin: Annotated[Actor, Depends(get_current_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    limit: int = Query(50, ge=1, le=200),
) -> list[BookingResponse]:
    """Bookings waiting for a dispute decision, oldest first."""
    result = await db.execute(
        select(Booking)
        .where(Booking.fulfillment_status == "disputed")
        .order_by(Booking.disputed_at.asc())
        .limit(limit)
    )
    return [BookingResponse.from_booking(b) for b in result.scalars().unique().all()]


@router.post("/bookings/{booking_id}/refund", response_model=BookingActionResponse)
async def refund_booking(
    booking_id: UUID,
    request: AdminRefund,
    admin: Annotated[Actor, Depends(get_current_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    """Refund a captured booking, fully or partially."""
    result = await admin_service.refund_booking(db, admin, booking_id, request.amount_cents, request.reason)
    return BookingActionResponse(data=unwrap(result))


@router.post("/bookings/{booking_id}/resolve-dispute", response_model=BookingActionResponse)
async def resolve_dispute(
    booking_id: UUID,
    request: DisputeResolution,
    admin: Annotated[Actor, Depends(get_current_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    result = await admin_service.resolve_dispute(
        db, admin, booking_id, request.refund_amount_cents, request.notes
    )
    return BookingActionResponse(data=unwrap(result))
