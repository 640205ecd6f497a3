"""Administrative 2FA endpoints (rate-limit state and audit history)."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query

from twofa.core.app_exceptions import NotFoundError
from twofa.core.dependencies import ClientCtx, Principal, TwoFAService, require_roles
from twofa.models import IdentifierKind
from twofa.schemas.twofa import (
    AuditRecordResponse,
    AuditRecordsResponse,
    OkResponse,
    RateLimitStateResponse,
    SuccessResponse,
)

router = APIRouter(prefix="/2fa/admin", tags=["2FA Admin"])


@router.get("/rate-limits", response_model=SuccessResponse[RateLimitStateResponse])
async def get_rate_limit(
    service: TwoFAService,
    identifier: str = Query(..., min_length=1, max_length=255),
    kind: IdentifierKind = Query(IdentifierKind.PHONE),
    admin: Principal = Depends(require_roles("ADMIN")),
) -> SuccessResponse[RateLimitStateResponse]:
    """Show a counter including any lockout (the only place lockout state is revealed)."""
    state = await service.rate_limiter.inspect(identifier, kind.value)
    if state is None:
        raise NotFoundError("no rate limit record", code="RATE_LIMIT_NOT_FOUND")
    return SuccessResponse(
        data=RateLimitStateResponse(
            identifier=state.identifier,
            kind=state.kind,
            request_count=state.request_count,
            window_start=state.window_start,
            window_seconds=state.window_seconds,
            max_requests=state.max_requests,
            locked_until=state.locked_until,
            lock_reason=state.lock_reason,
        )
    )


@router.delete("/rate-limits", response_model=SuccessResponse[OkResponse])
async def clear_rate_limit(
    service: TwoFAService,
    ctx: ClientCtx,
    identifier: str = Query(..., min_length=1, max_length=255),
    kind: IdentifierKind = Query(IdentifierKind.PHONE),
    admin: Principal = Depends(require_roles("ADMIN")),
) -> SuccessResponse[OkResponse]:
    cleared = await service.clear_rate_limit(identifier, kind, ctx, actor_id=admin.user_id)
    if not cleared:
        raise NotFoundError("no rate limit record", code="RATE_LIMIT_NOT_FOUND")
    return SuccessResponse(data=OkResponse())


@router.get("/users/{user_id}/audit", response_model=SuccessResponse[AuditRecordsResponse])
async def list_user_audit(
    user_id: UUID,
    service: TwoFAService,
    limit: int = Query(50, ge=1, le=500),
    admin: Principal = Depends(require_roles("ADMIN")),
) -> SuccessResponse[AuditRecordsResponse]:
    records = await service.list_audit(user_id, limit)
    return SuccessResponse(
        data=AuditRecordsResponse(
            records=[AuditRecordResponse.model_validate(record) for record in records]
        )
    )
