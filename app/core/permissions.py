"""Roles and the explicit actor passed into every booking operation."""

from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from app.core.exceptions import AuthorizationError


class UserRole(str, Enum):
    """User roles in the system."""

    CLIENT = "client"
    COACH = "coach"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    """The user on whose behalf an operation runs."""

    id: UUID
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def require_role(actor: Actor, *allowed_roles: UserRole) -> None:
    """Reject the actor unless it holds one of the allowed roles."""
    if actor.role not in allowed_roles:
        allowed = ", ".join(role.value for role in allowed_roles)
        raise AuthorizationError(
            f"Role '{actor.role.value}' is not authorized for this action (requires {allowed})"
        )


def require_owner(actor: Actor, owner_id: UUID | None, detail: str | None = None) -> None:
    """Reject the actor unless it owns the resource."""
    if owner_id is None or actor.id != owner_id:
        raise AuthorizationError(detail or "You don't have permission to modify this booking")
