"""Whole-request deadline."""

import asyncio
from typing import Callable

from fastapi import Request, Response, status
from starlette.middleware.base import BaseHTTPMiddleware

from twofa.core.config import settings
from twofa.core.errors import error_response
from twofa.core.logging import get_logger

logger = get_logger(__name__)


class RequestTimeoutMiddleware(BaseHTTPMiddleware):
    """Abort a request that runs past REQUEST_TIMEOUT_SECONDS with a 500 envelope."""

    def __init__(self, app, timeout: float | None = None):
        super().__init__(app)
        self.timeout = timeout or settings.REQUEST_TIMEOUT_SECONDS

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await asyncio.wait_for(call_next(request), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Request timed out",
                extra={
                    "request_id": getattr(request.state, "request_id", None),
                    "method": request.method,
                    "path": request.url.path,
                    "timeout_seconds": self.timeout,
                },
            )
            return error_response(
                request,
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "REQUEST_TIMEOUT",
                "The request took too long to complete",
            )
