"""Security event logging utilities."""

from typing import Any

from fastapi import Request

from twofa.common.request_id import get_request_id
from twofa.core.logging import get_logger

logger = get_logger(__name__)


def get_client_ip(request: Request) -> str:
    """Extract client IP from request."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip
    if request.client:
        return request.client.host
    return "unknown"


def get_user_agent(request: Request) -> str | None:
    """Extract user agent from request."""
    return request.headers.get("User-Agent")


def log_security_event(
    request: Request | None,
    event_type: str,
    outcome: str,  # "allow", "deny", "degraded"
    reason_code: str | None = None,
    user_id: str | None = None,
    **extra_fields: Any,
) -> None:
    """
    Log a security event with structured fields.

    Args:
        request: FastAPI request object, if the event happened inside a request
        event_type: Event type (e.g., "otp_verified", "rate_limited")
        outcome: "allow", "deny", or "degraded"
        reason_code: Error code if outcome is "deny"
        user_id: User ID if known
        **extra_fields: Additional fields to include (never plaintext credentials)
    """
    log_data: dict[str, Any] = {
        "event_type": event_type,
        "outcome": outcome,
    }
    if request is not None:
        log_data["request_id"] = get_request_id(request)
        log_data["ip_address"] = get_client_ip(request)
        log_data["user_agent"] = get_user_agent(request)

    if user_id:
        log_data["user_id"] = str(user_id)
    if reason_code:
        log_data["reason_code"] = reason_code

    log_data.update(extra_fields)

    if outcome == "deny":
        logger.warning("Security event: denied", extra=log_data)
    elif outcome == "degraded":
        logger.warning("Security event: degraded", extra=log_data)
    else:
        logger.info("Security event: allowed", extra=log_data)
