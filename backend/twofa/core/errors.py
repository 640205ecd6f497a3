"""Error handling and consistent error response format."""

from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException

from twofa.common.request_id import get_request_id
from twofa.core.app_exceptions import AppError
from twofa.core.logging import get_logger

logger = get_logger(__name__)

_STATUS_CODES = {
    status.HTTP_400_BAD_REQUEST: "BAD_REQUEST",
    status.HTTP_401_UNAUTHORIZED: "UNAUTHORIZED",
    status.HTTP_403_FORBIDDEN: "FORBIDDEN",
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_405_METHOD_NOT_ALLOWED: "METHOD_NOT_ALLOWED",
    status.HTTP_409_CONFLICT: "CONFLICT",
    status.HTTP_429_TOO_MANY_REQUESTS: "RATE_LIMITED",
}


class ErrorBody(BaseModel):
    """Inner error object."""

    code: int
    error_code: str
    message: str
    details: Any | None = None


class ErrorResponse(BaseModel):
    """Error envelope: {success: false, error: {...}, request_id}."""

    success: bool = False
    error: ErrorBody
    request_id: str | None = None


def error_response(
    request: Request,
    status_code: int,
    error_code: str,
    message: str,
    details: Any | None = None,
) -> JSONResponse:
    """Render an error envelope."""
    body = ErrorResponse(
        error=ErrorBody(code=status_code, error_code=error_code, message=message, details=details),
        request_id=get_request_id(request),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle request validation errors as 400 bad input."""
    details: list[dict[str, Any]] = []
    for error in exc.errors():
        details.append(
            {
                "field": ".".join(str(loc) for loc in error.get("loc", [])),
                "issue": error.get("msg", "Validation error"),
                "type": error.get("type", "validation_error"),
            }
        )

    return error_response(
        request,
        status.HTTP_400_BAD_REQUEST,
        "VALIDATION_ERROR",
        "Invalid request data",
        details=details,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle typed domain errors and plain HTTP exceptions."""
    if isinstance(exc, AppError):
        if exc.status_code >= 500:
            logger.error(
                "Request failed with internal error",
                extra={"request_id": get_request_id(request), "error_code": exc.code},
            )
        return error_response(request, exc.status_code, exc.code, exc.message, exc.details)

    if isinstance(exc.detail, str):
        message = exc.detail
    else:
        message = "An error occurred"
    code = _STATUS_CODES.get(exc.status_code, "HTTP_ERROR")
    response = error_response(request, exc.status_code, code, message)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions (500) without leaking the underlying error."""
    logger.error(
        "Unhandled exception",
        extra={
            "request_id": get_request_id(request),
            "error_type": type(exc).__name__,
            "path": request.url.path,
        },
        exc_info=exc,
    )
    return error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "INTERNAL_ERROR",
        "An internal server error occurred",
    )
