"""Application-specific exceptions for consistent error handling."""

from typing import Any

from fastapi import HTTPException, status


class AppError(HTTPException):
    """Application error with standardized error code."""

    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | list[Any] | None = None,
        status_code: int | None = None,
    ):
        """Initialize application error."""
        status_code = status_code or self.default_status
        code = code or self.default_code
        super().__init__(
            status_code=status_code,
            detail={
                "code": code,
                "message": message,
                "details": details,
            },
        )
        self.code = code
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class UnauthenticatedError(AppError):
    """Caller lacks a user identity."""

    default_status = status.HTTP_401_UNAUTHORIZED
    default_code = "UNAUTHORIZED"


class ForbiddenError(AppError):
    """Caller identified but not the owner, or lacks the required role."""

    default_status = status.HTTP_403_FORBIDDEN
    default_code = "FORBIDDEN"


class BadRequestError(AppError):
    """Malformed input or an invalid credential."""

    default_status = status.HTTP_400_BAD_REQUEST
    default_code = "BAD_REQUEST"


class NotFoundError(AppError):
    default_status = status.HTTP_404_NOT_FOUND
    default_code = "NOT_FOUND"


class ConflictError(AppError):
    default_status = status.HTTP_409_CONFLICT
    default_code = "CONFLICT"


class RateLimitedError(AppError):
    """Rate limiter denied the request or the attempt budget is spent."""

    default_status = status.HTTP_429_TOO_MANY_REQUESTS
    default_code = "RATE_LIMITED"


class InternalError(AppError):
    """Storage or delivery failure. The message is safe to show to clients."""

    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = "INTERNAL_ERROR"
