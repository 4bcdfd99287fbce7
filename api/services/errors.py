"""
Domain errors for the booking core.

Services raise these; the API layer turns them into HTTP responses through
``to_http_exception`` (see ``main.register_error_handlers``).
"""

from typing import Any

from fastapi import HTTPException, status


class DomainException(Exception):
    """Base exception for all domain errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationError(DomainException):
    """Request is malformed for the operation (bad interval, no slots, ...)."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(DomainException):
    """Referenced subscription, booking, field or user does not exist."""

    status_code = status.HTTP_404_NOT_FOUND


class SlotConflictError(DomainException):
    """Slot is locked or booked by someone else."""

    status_code = status.HTTP_409_CONFLICT


class ConcurrentUpdateError(DomainException):
    """Subscription kept changing underneath a conditional update."""

    status_code = status.HTTP_409_CONFLICT


class InvariantViolation(DomainException):
    """Operation would break a lifecycle invariant."""

    status_code = 422


class GatewayError(DomainException):
    """Payment gateway call failed or timed out."""

    status_code = status.HTTP_502_BAD_GATEWAY
