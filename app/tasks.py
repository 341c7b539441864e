"""Celery background tasks.

Thin wrappers that run the deadline scans inside a worker. The same scans
are reachable over HTTP through the cron endpoints.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from celery import shared_task
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db_context
from app.services.deadline_service import deadline_service

logger = logging.getLogger(__name__)

# One loop per worker process; pooled database connections are bound to it.
_loop: asyncio.AbstractEventLoop | None = None


def run_async(coro):
    """Run async function in sync context."""
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop.run_until_complete(coro)


async def _run_scan(scan: Callable[[AsyncSession], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
    async with get_db_context() as db:
        return await scan(db)


def _summarize(name: str, results: dict[str, Any]) -> dict[str, Any]:
    errors = results.get("errors") or []
    if errors:
        logger.warning(f"{name}: {len(errors)} candidate(s) failed")
    logger.info(f"{name}: {results}")
    return {"status": "success", **results, "errors": len(errors)}


# ==================== PAYMENT DEADLINES ====================


@shared_task(bind=True, max_retries=3)
def process_payment_deadlines(self):
    """Send payment reminders and cancel bookings whose payment window passed.

    Runs every minute.
    """
    try:
        results = run_async(_run_scan(deadline_service.process_payment_deadlines))
        return _summarize("process_payment_deadlines", results)
    except Exception as exc:
        self.retry(exc=exc, countdown=30)


# ==================== HOLDS AND LOCKS ====================


@shared_task(bind=True, max_retries=3)
def expire_participant_holds(self):
    """Release group lesson seats whose payment hold expired."""
    try:
        results = run_async(_run_scan(deadline_service.expire_participant_holds))
        return _summarize("expire_participant_holds", results)
    except Exception as exc:
        self.retry(exc=exc, countdown=60)


@shared_task(bind=True, max_retries=3)
def cleanup_stale_locks(self):
    try:
        results = run_async(_run_scan(deadline_service.cleanup_stale_locks))
        return _summarize("cleanup_stale_locks", results)
    except Exception as exc:
        self.retry(exc=exc, countdown=60)


# ==================== COMPLETION ====================


@shared_task(bind=True, max_retries=3)
def auto_complete_bookings(self):
    """Complete sessions that ended past the grace period without a dispute.

    Runs daily at 6 AM UTC.
    """
    try:
        results = run_async(_run_scan(deadline_service.auto_complete_bookings))
        return _summarize("auto_complete_bookings", results)
    except Exception as exc:
        self.retry(exc=exc, countdown=300)
