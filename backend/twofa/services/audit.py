"""Audit trail for 2FA decisions."""

from typing import Any
from uuid import UUID

from twofa.core.logging import get_logger
from twofa.models import AuditEvent, AuthAuditLog, EventStatus
from twofa.services.context import ClientContext
from twofa.services.credential_store import CredentialStore, StoreError

logger = get_logger(__name__)

# Records of security state; a failed write must fail the operation
CRITICAL_EVENTS = frozenset(
    {
        AuditEvent.DEVICE_REVOKED,
        AuditEvent.DEVICES_REVOKED_ALL,
        AuditEvent.TWOFA_DISABLED,
    }
)


class AuditTrail:
    """Appends one audit row per decision."""

    def __init__(self, store: CredentialStore):
        self.store = store

    async def record(
        self,
        event: AuditEvent,
        status: EventStatus,
        user_id: UUID | None,
        ctx: ClientContext,
        details: dict[str, Any] | None = None,
        related_entity_type: str | None = None,
        related_entity_id: UUID | None = None,
    ) -> None:
        """
        Write an audit record.

        Failures are logged and swallowed unless the event is in CRITICAL_EVENTS,
        in which case StoreError propagates to the caller.
        """
        audit_details = dict(details or {})
        if ctx.request_id:
            audit_details["request_id"] = ctx.request_id

        record = AuthAuditLog(
            user_id=user_id,
            event_type=event.value,
            event_status=status.value,
            details=audit_details,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            device_fingerprint=ctx.device_fingerprint,
            related_entity_type=related_entity_type,
            related_entity_id=related_entity_id,
        )
        try:
            await self.store.append_audit(record)
        except StoreError:
            if event in CRITICAL_EVENTS:
                raise
            logger.error(
                "Audit write failed",
                extra={
                    "event_type": event.value,
                    "event_status": status.value,
                    "user_id": str(user_id) if user_id else None,
                    "request_id": ctx.request_id,
                },
                exc_info=True,
            )
