"""Request ID middleware and utilities."""

import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from twofa.core.logging import get_logger, request_id_var

logger = get_logger(__name__)

# Client-supplied IDs end up in logs and audit rows
REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")


def get_request_id(request: Request) -> str:
    """Get request ID from request state."""
    return getattr(request.state, "request_id", None) or request_id_var.get() or "unknown"


def resolve_request_id(header_value: str | None) -> str:
    """Accept a well-formed inbound X-Request-ID, otherwise mint a new one."""
    if header_value and REQUEST_ID_PATTERN.match(header_value):
        return header_value
    return str(uuid.uuid4())


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Middleware to generate and track request IDs."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request and add request ID."""
        # Generate or extract request ID
        request_id = resolve_request_id(request.headers.get("X-Request-ID"))
        request.state.request_id = request_id
        context_token = request_id_var.set(request_id)

        # Log request start (query string omitted, it can carry codes)
        start_time = time.time()
        logger.info(
            "Request started",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
            },
        )

        # Process request
        try:
            response = await call_next(request)
        except Exception as e:
            # Log error
            elapsed_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "Request failed",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": 500,
                    "latency_ms": elapsed_ms,
                    "error_type": type(e).__name__,
                },
                exc_info=True,
            )
            raise
        finally:
            request_id_var.reset(context_token)

        # Calculate latency
        elapsed_ms = int((time.time() - start_time) * 1000)

        # Add request ID to response header
        response.headers["X-Request-ID"] = request_id

        # Log request completion
        logger.info(
            "Request completed",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "latency_ms": elapsed_ms,
            },
        )

        return response
