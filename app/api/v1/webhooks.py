"""Webhook endpoints for the payment processor."""

import logging
from typing import Annotated, Any
from uuid import UUID

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db
from app.config import settings
from app.models.user import CoachProfile
from app.services.audit_service import audit_service

logger = logging.getLogger(__name__)

router = APIRouter()

# Processor event type -> payment record status
INTENT_EVENT_STATUSES = {
    "payment_intent.created": "created",
    "payment_intent.amount_capturable_updated": "authorized",
    "payment_intent.succeeded": "captured",
    "payment_intent.canceled": "cancelled",
    "payment_intent.payment_failed": "failed",
}


@router.post("/stripe", status_code=status.HTTP_200_OK)
async def stripe_webhook(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
) -> dict:
    """Handle Stripe webhook events."""
    if not settings.stripe_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stripe webhook secret is not configured",
        )

    # Raw body is required for signature verification
    payload = await request.body()

    try:
        event = stripe.Webhook.construct_event(
            payload,
            stripe_signature,
            settings.stripe_webhook_secret,
        )
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        )
    except stripe.SignatureVerificationError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        )

    await _handle_stripe_event(db, event)
    return {"received": True}


async def _handle_stripe_event(db: AsyncSession, event: Any) -> None:
    """Dispatch a verified event to its handler."""
    event_type = event["type"]
    data = event["data"]["object"]

    if event_type == "account.updated":
        await _handle_account_updated(db, data)
    elif event_type in INTENT_EVENT_STATUSES:
        await _handle_intent_event(db, data, INTENT_EVENT_STATUSES[event_type])
    elif event_type == "charge.refunded":
        await _handle_charge_refunded(db, data)
    else:
        logger.debug(f"Ignoring webhook event {event_type}")


async def _handle_account_updated(db: AsyncSession, data: Any) -> None:
    """Mirror the processor's onboarding state onto the coach profile."""
    enabled = bool(data.get("charges_enabled")) and bool(data.get("payouts_enabled"))
    result = await db.execute(
        update(CoachProfile)
        .where(CoachProfile.payout_account_id == data["id"])
        .values(payouts_enabled=enabled)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 0:
        logger.warning(f"account.updated for unknown payout account {data['id']}")
    else:
        logger.info(f"Payout account {data['id']} payouts_enabled={enabled}")


def _metadata_ids(data: Any) -> tuple[UUID | None, UUID | None]:
    metadata = data.get("metadata") or {}
    try:
        booking_id = UUID(metadata["booking_id"]) if metadata.get("booking_id") else None
        participant_id = UUID(metadata["participant_id"]) if metadata.get("participant_id") else None
    except ValueError:
        return None, None
    return booking_id, participant_id


async def _handle_intent_event(db: AsyncSession, data: Any, payment_status: str) -> None:
    booking_id, participant_id = _metadata_ids(data)
    if booking_id is None:
        logger.warning(f"Intent {data['id']} carries no booking reference")
        return
    await audit_service.record_payment_event(
        db,
        booking_id,
        data["id"],
        data["amount"],
        payment_status,
        participant_id=participant_id,
    )


async def _handle_charge_refunded(db: AsyncSession, data: Any) -> None:
    intent_id = data.get("payment_intent")
    booking_id, participant_id = _metadata_ids(data)
    if not intent_id or booking_id is None:
        logger.warning(f"Refunded charge {data['id']} carries no booking reference")
        return
    await audit_service.record_payment_event(
        db,
        booking_id,
        intent_id,
        data["amount"],
        "refunded",
        participant_id=participant_id,
        refunded_amount_cents=data.get("amount_refunded"),
    )
