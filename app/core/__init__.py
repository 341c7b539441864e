"""Core utilities and security modules."""

from app.core.exceptions import (
    AppException,
    AuthenticationError,
    AuthorizationError,
    CapacityError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    PaymentAlreadyCapturedError,
    StateConflictError,
    ValidationError,
)
from app.core.security import (
    create_access_token,
    verify_cron_secret,
    verify_token,
)

__all__ = [
    "AppException",
    "AuthenticationError",
    "AuthorizationError",
    "CapacityError",
    "GatewayError",
    "InvalidStateError",
    "NotFoundError",
    "PaymentAlreadyCapturedError",
    "StateConflictError",
    "ValidationError",
    "create_access_token",
    "verify_cron_secret",
    "verify_token",
]
