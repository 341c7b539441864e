"""Booking endpoints for individual and private-group sessions."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_actor, get_db, unwrap
from app.core.exceptions import AuthorizationError
from app.core.middleware import booking_limiter
from app.core.permissions import Actor
from app.domain.cancellation_policy import get_policy_description
from app.models.booking import (
    Booking,
    BookingParticipant,
    IndividualBookingDetails,
    PrivateGroupBookingDetails,
)
from app.schemas.booking import (
    BookingActionResponse,
    BookingCancel,
    BookingCreate,
    BookingDecline,
    BookingListResponse,
    BookingResponse,
    DisputeCreate,
    PrivateGroupBookingCreate,
)
from app.services.booking_service import booking_service
from app.services.group_lesson_service import group_lesson_service

router = APIRouter()


def _can_view(booking: Booking, actor: Actor) -> bool:
    if actor.is_admin or booking.coach_id == actor.id:
        return True
    details = booking.details
    if getattr(details, "payer_id", None) == actor.id:
        return True
    return any(p.user_id == actor.id for p in booking.participants)


@router.post(
    "",
    response_model=BookingActionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(booking_limiter)],
)
async def create_booking(
    request: BookingCreate,
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    """Request an individual session and open the payment hold."""
    result = await booking_service.create_booking(
        db,
        actor,
        coach_id=request.coach_id,
        scheduled_start_at=request.scheduled_start_at,
        scheduled_end_at=request.scheduled_end_at,
        location=request.location.model_dump(exclude_none=True),
        client_message=request.client_message,
        payment_intent_id=request.payment_intent_id,
    )
    return BookingActionResponse(data=unwrap(result))


@router.post(
    "/private-group",
    response_model=BookingActionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(booking_limiter)],
)
async def create_private_group_booking(
    request: PrivateGroupBookingCreate,
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    """Request a private group session paid by the organizer."""
    result = await booking_service.create_private_group_booking(
        db,
        actor,
        coach_id=request.coach_id,
        scheduled_start_at=request.scheduled_start_at,
        scheduled_end_at=request.scheduled_end_at,
        location=request.location.model_dump(exclude_none=True),
        participant_ids=request.participant_ids,
        client_message=request.client_message,
    )
    return BookingActionResponse(data=unwrap(result))


@router.get("", response_model=BookingListResponse)
async def list_bookings(
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    role: str = Query("client", pattern="^(client|coach)$"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> BookingListResponse:
    """List the current user's bookings as client/participant or as coach."""
    if role == "coach":
        condition = Booking.coach_id == actor.id
    else:
        condition = or_(
            Booking.id.in_(
                select(IndividualBookingDetails.booking_id).where(
                    IndividualBookingDetails.client_id == actor.id
                )
            ),
            Booking.id.in_(
                select(PrivateGroupBookingDetails.booking_id).where(
                    PrivateGroupBookingDetails.organizer_id == actor.id
                )
            ),
            Booking.id.in_(
                select(BookingParticipant.booking_id).where(BookingParticipant.user_id == actor.id)
            ),
        )

    total = (await db.execute(select(func.count()).select_from(Booking).where(condition))).scalar_one()
    result = await db.execute(
        select(Booking)
        .where(condition)
        .order_by(Booking.scheduled_start_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return BookingListResponse(
        items=[BookingResponse.from_booking(b) for b in result.scalars().unique().all()],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/cancellation-policy")
async def cancellation_policy() -> dict:
    """Describe the refund tiers applied on cancellation."""
    return {"policy": get_policy_description()}


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingResponse:
    """Get booking details."""
    booking = await booking_service.get_booking(db, booking_id)
    if not _can_view(booking, actor):
        raise AuthorizationError("You don't have permission to view this booking")
    return BookingResponse.from_booking(booking)


@router.post("/{booking_id}/confirm-payment", response_model=BookingActionResponse)
async def confirm_payment(
    booking_id: UUID,
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    """Record that the client finished authorizing the payment."""
    result = await booking_service.confirm_payment(db, actor, booking_id)
    return BookingActionResponse(data=unwrap(result))


@router.post("/{booking_id}/accept", response_model=BookingActionResponse)
async def accept_booking(
    booking_id: UUID,
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    """Accept a booking request (coach); captures the payment."""
    result = await booking_service.accept_booking(db, actor, booking_id)
    return BookingActionResponse(data=unwrap(result))


@router.post("/{booking_id}/decline", response_model=BookingActionResponse)
async def decline_booking(
    booking_id: UUID,
    request: BookingDecline,
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    """Decline a booking request (coach); releases the hold."""
    result = await booking_service.decline_booking(db, actor, booking_id, request.reason)
    return BookingActionResponse(data=unwrap(result))


@router.post("/{booking_id}/cancel", response_model=BookingActionResponse)
async def cancel_booking(
    booking_id: UUID,
    request: BookingCancel,
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    """Cancel a booking.

    Coaches cancelling a group booking cancel it for every participant.
    """
    booking = await booking_service.get_booking(db, booking_id)
    if booking.booking_type != "individual" and booking.coach_id == actor.id:
        result = await group_lesson_service.cancel_lesson(db, actor, booking_id, request.reason)
    else:
        result = await booking_service.cancel_booking(db, actor, booking_id, request.reason)
    return BookingActionResponse(data=unwrap(result))


@router.post("/{booking_id}/complete", response_model=BookingActionResponse)
async def complete_booking(
    booking_id: UUID,
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    """Mark a delivered session complete (coach)."""
    result = await booking_service.complete_booking(db, actor, booking_id)
    return BookingActionResponse(data=unwrap(result))


@router.post("/{booking_id}/dispute", response_model=BookingActionResponse)
async def open_dispute(
    booking_id: UUID,
    request: DisputeCreate,
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    """Dispute a delivered session (paying client)."""
    result = await booking_service.open_dispute(db, actor, booking_id, request.reason)
    return BookingActionResponse(data=unwrap(result))
