"""Structured results returned by booking operations."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from fastapi import status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AppException

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """Outcome of a business operation.

    Callers branch on ``success`` instead of catching exceptions.
    """

    success: bool
    error: str | None = None
    status_code: int = status.HTTP_200_OK
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **data: Any) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, status_code: int = status.HTTP_400_BAD_REQUEST) -> "OperationResult":
        return cls(success=False, error=error, status_code=status_code)


async def run_operation(
    db: AsyncSession,
    operation: str,
    entity_id: UUID | str | None,
    action: Callable[[], Awaitable[OperationResult]],
) -> OperationResult:
    """Run an aggregate operation and translate failures into a result.

    Args:
        db: Database session, rolled back on any failure
        operation: Operation name used in logs and the generic error message
        entity_id: Booking or participant the operation targets
        action: Zero-argument coroutine factory doing the work

    Returns:
        OperationResult from the action, or a failed result
    """
    try:
        return await action()
    except AppException as exc:
        await db.rollback()
        logger.warning(f"{operation} refused for {entity_id}: {exc.detail}")
        return OperationResult.fail(str(exc.detail), exc.status_code)
    except Exception:
        await db.rollback()
        logger.exception(f"{operation} failed for {entity_id}")
        return OperationResult.fail(
            f"Failed to {operation.replace('_', ' ')}",
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
