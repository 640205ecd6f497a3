"""FastAPI dependencies for authentication, authorization and service wiring."""

from dataclasses import dataclass
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, Request

from twofa.core.app_exceptions import ForbiddenError, UnauthenticatedError
from twofa.core.security import verify_access_token
from twofa.db.session import get_session_factory
from twofa.security.rate_limit import create_rate_limiter
from twofa.services.context import ClientContext
from twofa.services.credential_store import CredentialStore
from twofa.services.orchestrator import TwoFactorService
from twofa.services.sms.service import get_sms_service

_twofa_service: TwoFactorService | None = None


@dataclass(frozen=True)
class Principal:
    """Caller identity taken from the bearer credential issued by the auth subsystem."""

    user_id: UUID
    role: str
    phone_number: str | None = None
    email: str | None = None


def get_twofa_service() -> TwoFactorService:
    """Process-wide service instance. Tests override this dependency."""
    global _twofa_service

    if _twofa_service is None:
        store = CredentialStore(get_session_factory())
        _twofa_service = TwoFactorService(
            store=store,
            rate_limiter=create_rate_limiter(store),
            sms=get_sms_service(),
        )
    return _twofa_service


def get_current_principal(
    authorization: Annotated[str | None, Header()] = None,
) -> Principal:
    """Dependency to get the caller from the Bearer JWT."""
    if not authorization:
        raise UnauthenticatedError("Authorization header missing")

    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Invalid authorization scheme")
    except ValueError:
        raise UnauthenticatedError(
            "Invalid authorization header format. Expected: Bearer <token>"
        ) from None

    try:
        payload = verify_access_token(token)
        user_id = UUID(payload["sub"])
        role = payload["role"]
    except Exception as e:
        raise UnauthenticatedError("Invalid or expired token") from e

    return Principal(
        user_id=user_id,
        role=role,
        phone_number=payload.get("phone_number"),
        email=payload.get("email"),
    )


def require_roles(*allowed_roles: str):
    """Dependency factory to require specific roles."""

    def role_checker(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed_roles:
            raise ForbiddenError(f"Access denied. Required roles: {list(allowed_roles)}")
        return principal

    return role_checker


def get_client_context(request: Request) -> ClientContext:
    return ClientContext.from_request(request)


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
TwoFAService = Annotated[TwoFactorService, Depends(get_twofa_service)]
ClientCtx = Annotated[ClientContext, Depends(get_client_context)]
