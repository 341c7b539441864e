"""Public group lesson endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_actor, get_db, unwrap
from app.core.middleware import booking_limiter
from app.core.permissions import Actor
from app.database import utcnow
from app.domain.booking_state import BookingType, CapacityStatus
from app.models.booking import Booking, PublicGroupLessonDetails
from app.schemas.booking import BookingActionResponse, BookingCancel, BookingResponse
from app.schemas.lesson import LessonCreate, ParticipantDecline
from app.services.group_lesson_service import group_lesson_service

router = APIRouter()


@router.post("", response_model=BookingActionResponse, status_code=status.HTTP_201_CREATED)
async def create_lesson(
    request: LessonCreate,
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    """Publish a public group lesson (coach)."""
    result = await group_lesson_service.create_public_lesson(
        db,
        actor,
        scheduled_start_at=request.scheduled_start_at,
        scheduled_end_at=request.scheduled_end_at,
        location=request.location.model_dump(exclude_none=True),
        title=request.title,
        price_per_person_cents=request.price_per_person_cents,
        max_participants=request.max_participants,
        min_participants=request.min_participants,
        description=request.description,
    )
    return BookingActionResponse(data=unwrap(result))


@router.get("", response_model=list[BookingResponse])
async def list_open_lessons(
    db: Annotated[AsyncSession, Depends(get_db)],
    coach_id: UUID | None = None,
    limit: int = Query(50, ge=1, le=100),
) -> list[BookingResponse]:
    """List upcoming lessons that still take participants."""
    query = (
        select(Booking)
        .join(PublicGroupLessonDetails, PublicGroupLessonDetails.booking_id == Booking.id)
        .where(
            Booking.booking_type == BookingType.PUBLIC_GROUP.value,
            Booking.scheduled_start_at > utcnow(),
            PublicGroupLessonDetails.capacity_status == CapacityStatus.OPEN.value,
        )
        .order_by(Booking.scheduled_start_at.asc())
        .limit(limit)
    )
    if coach_id:
        query = query.where(Booking.coach_id == coach_id)
    result = await db.execute(query)
    return [BookingResponse.from_booking(b) for b in result.scalars().unique().all()]


@router.post(
    "/{booking_id}/join",
    response_model=BookingActionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(booking_limiter)],
)
async def join_lesson(
    booking_id: UUID,
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    """Request a seat; returns the client secret for the seat's hold."""
    result = await group_lesson_service.join_lesson(db, actor, booking_id)
    return BookingActionResponse(data=unwrap(result))


@router.post("/{booking_id}/leave", response_model=BookingActionResponse)
async def leave_lesson(
    booking_id: UUID,
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    result = await group_lesson_service.leave_lesson(db, actor, booking_id)
    return BookingActionResponse(data=unwrap(result))


@router.post("/{booking_id}/cancel", response_model=BookingActionResponse)
async def cancel_lesson(
    booking_id: UUID,
    request: BookingCancel,
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    """Cancel the whole lesson (coach); every participant is refunded or released."""
    result = await group_lesson_service.cancel_lesson(db, actor, booking_id, request.reason)
    return BookingActionResponse(data=unwrap(result))


@router.post("/{booking_id}/complete", response_model=BookingActionResponse)
async def complete_lesson(
    booking_id: UUID,
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    """Complete a lesson and transfer the coach's earnings."""
    result = await group_lesson_service.complete_lesson(db, actor, booking_id)
    return BookingActionResponse(data=unwrap(result))


@router.post(
    "/{booking_id}/participants/{participant_id}/confirm",
    response_model=BookingActionResponse,
)
async def confirm_participant_payment(
    booking_id: UUID,
    participant_id: UUID,
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    result = await group_lesson_service.confirm_participant_payment(db, actor, booking_id, participant_id)
    return BookingActionResponse(data=unwrap(result))


@router.post(
    "/{booking_id}/participants/{participant_id}/accept",
    response_model=BookingActionResponse,
)
async def accept_participant(
    booking_id: UUID,
    participant_id: UUID,
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    result = await group_lesson_service.accept_participant(db, actor, booking_id, participant_id)
    return BookingActionResponse(data=unwrap(result))


@router.post(
    "/{booking_id}/participants/{participant_id}/decline",
    response_model=BookingActionResponse,
)
async def decline_participant(
    booking_id: UUID,
    participant_id: UUID,
    request: ParticipantDecline,
    actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BookingActionResponse:
    result = await group_lesson_service.decline_participant(
        db, actor, booking_id, participant_id, request.reason
    )
    return BookingActionResponse(data=unwrap(result))
