"""Plain helpers shared by the test modules."""

from datetime import datetime, timedelta

from app.core.permissions import Actor, UserRole
from app.database import utcnow
from app.models.user import User

LOCATION = {"name": "Riverside Courts", "address": "12 Park Lane"}


def actor_for(user: User) -> Actor:
    return Actor(id=user.id, role=UserRole(user.role))


def session_window(days_ahead: float = 3, minutes: int = 60) -> tuple[datetime, datetime]:
    """A whole-minute window starting ``days_ahead`` from now."""
    start = (utcnow() + timedelta(days=days_ahead)).replace(second=0, microsecond=0)
    return start, start + timedelta(minutes=minutes)
