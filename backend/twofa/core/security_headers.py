"""Security headers middleware."""

from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from twofa.core.config import settings


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to add security headers."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Add security headers to response."""
        response = await call_next(request)

        # Content type options
        response.headers["X-Content-Type-Options"] = "nosniff"

        # Frame options
        response.headers["X-Frame-Options"] = "DENY"

        # Referrer policy (no path leakage to third parties)
        response.headers["Referrer-Policy"] = "no-referrer"

        # Permissions policy (minimal restrictive)
        response.headers["Permissions-Policy"] = (
            "camera=(), microphone=(), geolocation=(), interest-cohort=()"
        )

        # Caching: bodies can hold backup codes, TOTP seeds and device tokens
        response.headers["Cache-Control"] = "no-store"
        response.headers["Pragma"] = "no-cache"

        # HSTS only in production with HTTPS
        if settings.ENV == "prod" and request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response
