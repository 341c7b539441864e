"""API dependencies for authentication and common operations."""

from typing import Annotated, Any
from uuid import UUID

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AppException, AuthenticationError, AuthorizationError
from app.core.permissions import Actor, UserRole
from app.core.results import OperationResult
from app.core.security import verify_cron_secret, verify_token
from app.database import get_db
from app.models.user import User

__all__ = [
    "get_current_actor",
    "get_current_admin",
    "get_current_user",
    "get_db",
    "require_cron",
    "unwrap",
]

# Security scheme
security = HTTPBearer()


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    """Get the current authenticated user from JWT token."""
    payload = verify_token(credentials.credentials, token_type="access")
    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid token payload")
    try:
        user_uuid = UUID(user_id)
    except ValueError:
        raise AuthenticationError("Invalid token payload")

    result = await db.execute(select(User).where(User.id == user_uuid))
    user = result.scalar_one_or_none()

    if not user:
        raise AuthenticationError("User not found")
    if not user.is_active:
        raise AuthorizationError("User account is suspended")

    return user


async def get_current_actor(
    current_user: Annotated[User, Depends(get_current_user)],
) -> Actor:
    """The authenticated user as the actor passed into booking operations."""
    return Actor(id=current_user.id, role=UserRole(current_user.role))


async def get_current_admin(
    actor: Annotated[Actor, Depends(get_current_actor)],
) -> Actor:
    """Get current actor and verify they are an admin."""
    if not actor.is_admin:
        raise AuthorizationError("Admin access required")
    return actor


async def require_cron(
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Authenticate a scheduled-task trigger by its shared secret."""
    verify_cron_secret(authorization)


def unwrap(result: OperationResult) -> dict[str, Any]:
    """Return the data of a successful result, or raise it as an HTTP error."""
    if not result.success:
        raise AppException(status_code=result.status_code, detail=result.error or "Request failed")
    return result.data
