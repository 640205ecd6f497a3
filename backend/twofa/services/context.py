"""Caller context passed explicitly into every 2FA operation."""

from dataclasses import dataclass

from fastapi import Request

from twofa.common.request_id import get_request_id
from twofa.core.security_logging import get_client_ip, get_user_agent


@dataclass(frozen=True)
class ClientContext:
    """Where a request came from. Recorded on challenges, devices and audit rows."""

    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None
    device_fingerprint: str | None = None

    @classmethod
    def from_request(cls, request: Request, device_fingerprint: str | None = None) -> "ClientContext":
        return cls(
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
            request_id=get_request_id(request),
            device_fingerprint=device_fingerprint or request.headers.get("X-Device-Fingerprint"),
        )


def device_name_from_user_agent(user_agent: str | None) -> str:
    """Best-effort human label for a device."""
    ua = (user_agent or "").lower()
    if "iphone" in ua:
        return "iPhone"
    if "android" in ua:
        return "Android Device"
    if "chrome" in ua:
        if "mac" in ua:
            return "Chrome on Mac"
        if "windows" in ua:
            return "Chrome on Windows"
        return "Chrome Browser"
    if "safari" in ua:
        return "Safari Browser"
    if "firefox" in ua:
        return "Firefox Browser"
    return "Unknown Device"


def mask_phone(phone: str) -> str:
    """Keep the country code and leading digits: +12345678901 -> +123456****."""
    if len(phone) <= 7:
        return "****"
    return phone[:7] + "****"


def mask_email(email: str) -> str:
    local, _, domain = email.partition("@")
    if not domain:
        return "****"
    return f"{local[:1]}***@{domain}"


def mask_destination(destination: str) -> str:
    if "@" in destination:
        return mask_email(destination)
    return mask_phone(destination)
