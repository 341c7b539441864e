"""Custom application exceptions."""

from typing import Any

from fastapi import HTTPException, status


class AppException(HTTPException):
    """Base application exception."""

    def __init__(
        self,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail: str = "An unexpected error occurred",
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=detail, headers=headers)


class ValidationError(AppException):
    """Validation error exception."""

    def __init__(self, detail: str = "Validation failed", errors: list[dict[str, Any]] | None = None) -> None:
        self.errors = errors
        super().__init__(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


class NotFoundError(AppException):
    """Resource not found exception."""

    def __init__(self, resource: str = "Resource", identifier: str | None = None) -> None:
        detail = f"{resource} not found"
        if identifier:
            detail = f"{resource} with ID '{identifier}' not found"
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class AuthenticationError(AppException):
    """Authentication failed exception."""

    def __init__(self, detail: str = "Authentication failed") -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationError(AppException):
    """Wrong role or not the owner of the booking/participant."""

    def __init__(self, detail: str = "You don't have permission to perform this action") -> None:
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class StateConflictError(AppException):
    """Booking or participant is not in the required prior state."""

    def __init__(self, detail: str = "This operation is not allowed in the current state") -> None:
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class CapacityError(AppException):
    """Lesson is full or closed."""

    def __init__(self, detail: str = "This lesson is full") -> None:
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class GatewayError(AppException):
    """Payment processor call failed or returned an unexpected status."""

    def __init__(
        self,
        detail: str = "Payment processing failed",
        status_code: int = status.HTTP_502_BAD_GATEWAY,
    ) -> None:
        super().__init__(status_code=status_code, detail=detail)


class InvalidStateError(GatewayError):
    """Payment intent is not in a state that allows the requested operation."""

    def __init__(self, detail: str = "Payment is not in a capturable state", intent_status: str | None = None) -> None:
        self.intent_status = intent_status
        super().__init__(detail=detail, status_code=status.HTTP_409_CONFLICT)


class PaymentAlreadyCapturedError(GatewayError):
    """Hold could not be released because the payment already succeeded."""

    def __init__(
        self,
        detail: str = "Payment has already been processed. Please use the refund feature instead.",
    ) -> None:
        super().__init__(detail=detail, status_code=status.HTTP_409_CONFLICT)


class RateLimitExceeded(AppException):
    """Rate limit exceeded exception."""

    def __init__(self, detail: str = "Too many requests. Please try again later.") -> None:
        super().__init__(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=detail)
