"""OTP issuance and verification."""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from twofa.core.app_exceptions import BadRequestError, InternalError, RateLimitedError
from twofa.core.clock import Clock
from twofa.core.config import settings
from twofa.core.logging import get_logger
from twofa.core.mfa import generate_otp_code
from twofa.core.security import hash_secret_async, verify_secret_async
from twofa.core.security_logging import log_security_event
from twofa.models import (
    AuditEvent,
    DeliveryMethod,
    EventStatus,
    IdentifierKind,
    OTPChallenge,
)
from twofa.security.rate_limit import RateLimiter
from twofa.services.audit import AuditTrail
from twofa.services.context import ClientContext, mask_destination
from twofa.services.credential_store import CredentialStore
from twofa.services.sms.base import SMSDeliveryError, SMSProvider

logger = get_logger(__name__)


@dataclass
class IssuedOTP:
    """What the caller learns about an issued OTP. The code itself is not here."""

    otp_id: UUID
    destination_masked: str
    expires_at: datetime
    rate_limit_degraded: bool = False


class OTPEngine:
    """Generates, hashes, delivers and verifies numeric one-time passwords."""

    def __init__(
        self,
        store: CredentialStore,
        rate_limiter: RateLimiter,
        sms: SMSProvider,
        audit: AuditTrail,
        clock: Clock | None = None,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.sms = sms
        self.audit = audit
        self.clock = clock or store.clock

    def _message(self, code: str) -> str:
        return (
            f"Your {settings.TOTP_ISSUER} verification code is {code}. "
            f"It expires in {settings.OTP_EXPIRY_MINUTES} minutes."
        )

    async def send_otp(
        self,
        user_id: UUID,
        destination: str,
        purpose: str,
        ctx: ClientContext,
        *,
        audit: bool = True,
    ) -> IssuedOTP:
        """
        Issue a fresh OTP for (user, purpose) and deliver it by SMS.

        Any earlier active challenge for the same purpose is superseded first.
        Raises RateLimitedError when the destination is over its limit and
        InternalError when delivery fails; the stored challenge is left to expire.
        """
        masked = mask_destination(destination)

        limit = await self.rate_limiter.check(
            destination,
            IdentifierKind.PHONE.value,
            settings.RL_OTP_PHONE_LIMIT,
            settings.RL_OTP_PHONE_WINDOW,
        )
        if not limit.allowed:
            log_security_event(
                None,
                event_type="otp_send",
                outcome="deny",
                reason_code="RATE_LIMITED",
                user_id=str(user_id),
                request_id=ctx.request_id,
                purpose=purpose,
            )
            if audit:
                await self.audit.record(
                    AuditEvent.OTP_SENT,
                    EventStatus.FAILURE,
                    user_id,
                    ctx,
                    details={"purpose": purpose, "destination": masked, "reason": "rate_limited"},
                )
            raise RateLimitedError("too many OTP requests")

        await self.store.invalidate_user_otps(user_id, purpose)

        code = generate_otp_code()
        otp_hash = await hash_secret_async(code)
        now = self.clock()
        otp = await self.store.create_otp(
            OTPChallenge(
                user_id=user_id,
                otp_hash=otp_hash,
                purpose=purpose,
                delivery_method=DeliveryMethod.SMS.value,
                destination=destination,
                attempts=0,
                max_attempts=settings.OTP_MAX_ATTEMPTS,
                expires_at=now + timedelta(minutes=settings.OTP_EXPIRY_MINUTES),
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                created_at=now,
            )
        )

        try:
            await asyncio.wait_for(
                self.sms.send(destination, self._message(code)),
                timeout=settings.SMS_SEND_TIMEOUT_SECONDS,
            )
        except (SMSDeliveryError, asyncio.TimeoutError) as e:
            logger.error(
                "OTP delivery failed",
                extra={
                    "user_id": str(user_id),
                    "purpose": purpose,
                    "destination": masked,
                    "error_type": type(e).__name__,
                    "request_id": ctx.request_id,
                },
            )
            if audit:
                await self.audit.record(
                    AuditEvent.OTP_SENT,
                    EventStatus.FAILURE,
                    user_id,
                    ctx,
                    details={"purpose": purpose, "destination": masked, "reason": "delivery_failed"},
                    related_entity_type="otp_challenge",
                    related_entity_id=otp.id,
                )
            raise InternalError("failed to send OTP") from e

        details = {"purpose": purpose, "destination": masked}
        if limit.degraded:
            details["rate_limit_degraded"] = True
        if audit:
            await self.audit.record(
                AuditEvent.OTP_SENT,
                EventStatus.SUCCESS,
                user_id,
                ctx,
                details=details,
                related_entity_type="otp_challenge",
                related_entity_id=otp.id,
            )

        return IssuedOTP(
            otp_id=otp.id,
            destination_masked=masked,
            expires_at=otp.expires_at,
            rate_limit_degraded=limit.degraded,
        )

    async def verify_otp(
        self,
        user_id: UUID,
        code: str,
        purpose: str,
        ctx: ClientContext,
        *,
        audit: bool = True,
    ) -> OTPChallenge:
        """
        Check a code against the newest active challenge for (user, purpose).

        The attempt counter is incremented before the hash comparison. On
        success the challenge is marked verified and can never verify again.
        """
        otp = await self.store.get_active_otp(user_id, purpose)
        if otp is None:
            await self._record_failure(user_id, purpose, ctx, "no_active_otp", None, audit)
            raise BadRequestError("no active OTP", code="OTP_NOT_FOUND")

        if otp.attempts >= otp.max_attempts:
            await self._record_failure(user_id, purpose, ctx, "max_attempts", otp.id, audit)
            raise RateLimitedError("maximum OTP attempts exceeded", code="OTP_ATTEMPTS_EXCEEDED")

        if not await self.store.increment_otp_attempts(otp.id):
            current = await self.store.get_otp(otp.id)
            if current is not None and current.attempts >= current.max_attempts:
                # A concurrent verifier used the last attempt
                await self._record_failure(user_id, purpose, ctx, "max_attempts", otp.id, audit)
                raise RateLimitedError(
                    "maximum OTP attempts exceeded", code="OTP_ATTEMPTS_EXCEEDED"
                )
            # Consumed or superseded since the lookup
            await self._record_failure(user_id, purpose, ctx, "not_active", otp.id, audit)
            raise BadRequestError("no active OTP", code="OTP_NOT_FOUND")

        if not await verify_secret_async(code, otp.otp_hash):
            await self._record_failure(user_id, purpose, ctx, "invalid_otp", otp.id, audit)
            raise BadRequestError("invalid OTP", code="INVALID_OTP")

        if not await self.store.mark_otp_verified(otp.id):
            # Consumed by another request or superseded by a new send during the comparison
            await self._record_failure(user_id, purpose, ctx, "not_active", otp.id, audit)
            raise BadRequestError("no active OTP", code="OTP_NOT_FOUND")

        log_security_event(
            None,
            event_type="otp_verify",
            outcome="allow",
            user_id=str(user_id),
            request_id=ctx.request_id,
            purpose=purpose,
        )
        if audit:
            await self.audit.record(
                AuditEvent.OTP_VERIFIED,
                EventStatus.SUCCESS,
                user_id,
                ctx,
                details={"purpose": purpose, "destination": mask_destination(otp.destination)},
                related_entity_type="otp_challenge",
                related_entity_id=otp.id,
            )
        return otp

    async def _record_failure(
        self,
        user_id: UUID,
        purpose: str,
        ctx: ClientContext,
        reason: str,
        otp_id: UUID | None,
        audit: bool,
    ) -> None:
        log_security_event(
            None,
            event_type="otp_verify",
            outcome="deny",
            reason_code=reason.upper(),
            user_id=str(user_id),
            request_id=ctx.request_id,
            purpose=purpose,
        )
        if audit:
            await self.audit.record(
                AuditEvent.OTP_VERIFIED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"purpose": purpose, "reason": reason},
                related_entity_type="otp_challenge" if otp_id else None,
                related_entity_id=otp_id,
            )
