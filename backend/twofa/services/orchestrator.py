"""Two-factor authentication service.

Public surface used by the HTTP layer and by the outer login flow. Every
operation takes the acting user and a ClientContext explicitly, composes the
credential store, rate limiter, OTP engine and code manager, and writes exactly
one audit record describing its outcome.
"""

import functools
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar
from uuid import UUID

from twofa.core.app_exceptions import (
    AppError,
    BadRequestError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    RateLimitedError,
)
from twofa.core.clock import Clock, utcnow
from twofa.core.config import settings
from twofa.core.logging import get_logger
from twofa.core.security import create_access_token, generate_secure_token, hash_token
from twofa.core.security_logging import log_security_event
from twofa.models import (
    AuditEvent,
    EventStatus,
    IdentifierKind,
    OTPPurpose,
    PendingLogin,
    TrustedDevice,
    TwoFAMethod,
)
from twofa.security.rate_limit import RateLimiter
from twofa.services.audit import AuditTrail
from twofa.services.code_manager import CodeManager
from twofa.services.context import ClientContext, device_name_from_user_agent, mask_phone
from twofa.services.credential_store import CredentialStore, RecordConflictError, StoreError
from twofa.services.otp_engine import IssuedOTP, OTPEngine
from twofa.services.sms.base import SMSProvider

logger = get_logger(__name__)

T = TypeVar("T")

DISABLE_REVOKE_REASON = "2FA disabled"
USER_REVOKE_REASON = "user revoked"


def translate_store_errors(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Surface storage failures as InternalError without leaking the cause."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except StoreError as e:
            logger.error(
                "2FA operation failed on storage",
                extra={"operation": func.__name__, "error_type": type(e).__name__},
            )
            raise InternalError("internal error") from e

    return wrapper


@dataclass
class TwoFAStatus:
    enabled: bool
    method: str
    phone_verified: bool
    totp_verified: bool
    backup_codes_count: int
    trusted_devices_count: int
    enabled_at: datetime | None = None


@dataclass
class EnableResult:
    method: str
    backup_codes: list[str]
    requires_otp: bool = False
    totp_secret: str | None = None
    totp_qr_url: str | None = None
    otp_destination: str | None = None


@dataclass
class IssuedDeviceToken:
    """Plaintext device token; returned once and never stored."""

    device_id: UUID
    token: str
    expires_at: datetime


@dataclass
class DeviceView:
    id: UUID
    name: str
    trusted_at: datetime
    last_used_at: datetime | None
    ip_address: str | None
    is_current: bool


@dataclass
class IssuedPendingLogin:
    pending_id: UUID
    session_token: str
    expires_at: datetime


@dataclass
class LoginChallenge:
    """Outcome of begin_login."""

    requires_2fa: bool
    method: str | None = None
    session_token: str | None = None
    expires_at: datetime | None = None
    otp_destination: str | None = None
    trusted_device: bool = False


@dataclass
class LoginResult:
    user_id: UUID
    access_token: str
    verified_by: str
    device_token: IssuedDeviceToken | None = None
    details: dict[str, Any] = field(default_factory=dict)


class TwoFactorService:
    """Orchestrates every 2FA decision."""

    def __init__(
        self,
        store: CredentialStore,
        rate_limiter: RateLimiter,
        sms: SMSProvider,
        clock: Clock | None = None,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.clock = clock or store.clock or utcnow
        self.audit = AuditTrail(store)
        self.otp = OTPEngine(store, rate_limiter, sms, self.audit, clock=self.clock)
        self.codes = CodeManager(store, clock=self.clock)

    # Status and enrolment

    @translate_store_errors
    async def get_status(self, user_id: UUID) -> TwoFAStatus:
        row = await self.store.get_settings(user_id)
        backup_count = await self.store.count_unused_backup_codes(user_id)
        device_count = await self.store.count_trusted_devices(user_id)
        if row is None:
            return TwoFAStatus(
                enabled=False,
                method=TwoFAMethod.SMS.value,
                phone_verified=False,
                totp_verified=False,
                backup_codes_count=backup_count,
                trusted_devices_count=device_count,
            )
        return TwoFAStatus(
            enabled=row.enabled,
            method=row.method,
            phone_verified=row.phone_verified_at is not None,
            totp_verified=row.totp_verified_at is not None,
            backup_codes_count=backup_count,
            trusted_devices_count=device_count,
            enabled_at=row.enabled_at,
        )

    @translate_store_errors
    async def enable(
        self,
        user_id: UUID,
        method: TwoFAMethod,
        ctx: ClientContext,
        phone_number: str | None = None,
        account: str | None = None,
    ) -> EnableResult:
        """
        Turn on 2FA with the given method.

        A TOTP secret is generated for totp/both and a fresh backup-code set for
        every method. For sms/both an enable_2fa OTP is sent to the phone; a
        delivery failure there does not undo the enrolment.
        """
        method = TwoFAMethod(method)
        row = await self.store.get_settings(user_id)
        if row is not None and row.enabled:
            await self.audit.record(
                AuditEvent.TWOFA_ENABLED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"method": method.value, "reason": "already_enabled"},
            )
            raise BadRequestError("2FA is already enabled", code="TWOFA_ALREADY_ENABLED")

        if method.uses_sms and not phone_number:
            await self.audit.record(
                AuditEvent.TWOFA_ENABLED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"method": method.value, "reason": "missing_phone"},
            )
            raise BadRequestError("phone number required", code="PHONE_REQUIRED")

        enrollment = None
        if method.uses_totp:
            enrollment = self.codes.new_totp(account or phone_number or str(user_id))

        try:
            await self.store.enable_2fa(
                user_id,
                method.value,
                enrollment.secret_encrypted if enrollment else None,
            )
        except RecordConflictError:
            await self.audit.record(
                AuditEvent.TWOFA_ENABLED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"method": method.value, "reason": "already_enabled"},
            )
            raise BadRequestError("2FA is already enabled", code="TWOFA_ALREADY_ENABLED") from None

        try:
            backup_codes = await self.codes.issue_backup_codes(user_id)
        except StoreError:
            # The user never saw the secret or the codes; leave 2FA off
            await self.store.disable_2fa(user_id)
            await self.audit.record(
                AuditEvent.TWOFA_ENABLED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"method": method.value, "reason": "backup_codes_failed"},
            )
            raise
        result = EnableResult(method=method.value, backup_codes=backup_codes)
        if enrollment:
            result.totp_secret = enrollment.secret
            result.totp_qr_url = enrollment.provisioning_uri

        otp_sent = False
        if method.uses_sms:
            result.requires_otp = True
            result.otp_destination = mask_phone(phone_number)
            try:
                await self.otp.send_otp(
                    user_id, phone_number, OTPPurpose.ENABLE_2FA.value, ctx, audit=False
                )
                otp_sent = True
            except AppError as e:
                logger.warning(
                    "Enable-time OTP was not sent",
                    extra={"user_id": str(user_id), "error_code": e.code},
                )

        await self.audit.record(
            AuditEvent.TWOFA_ENABLED,
            EventStatus.SUCCESS,
            user_id,
            ctx,
            details={"method": method.value, "otp_sent": otp_sent},
        )
        log_security_event(
            None,
            event_type="2fa_enabled",
            outcome="allow",
            user_id=str(user_id),
            request_id=ctx.request_id,
            method=method.value,
        )
        return result

    @translate_store_errors
    async def disable(
        self,
        user_id: UUID,
        ctx: ClientContext,
        otp: str | None = None,
        backup_code: str | None = None,
    ) -> None:
        """
        Turn off 2FA after proof by OTP (purpose disable_2fa) or backup code.

        When both are supplied the OTP is tried first. Disabling clears the TOTP
        secret and backup codes and revokes every trusted device.
        """
        row = await self.store.get_settings(user_id)
        if row is None or not row.enabled:
            await self.audit.record(
                AuditEvent.TWOFA_DISABLED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"reason": "not_enabled"},
            )
            raise BadRequestError("2FA is not enabled", code="TWOFA_NOT_ENABLED")

        if not otp and not backup_code:
            await self.audit.record(
                AuditEvent.TWOFA_DISABLED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"reason": "missing_proof"},
            )
            raise BadRequestError("OTP or backup code required", code="PROOF_REQUIRED")

        verified_by = None
        if otp:
            try:
                await self.otp.verify_otp(
                    user_id, otp, OTPPurpose.DISABLE_2FA.value, ctx, audit=False
                )
                verified_by = "otp"
            except (BadRequestError, RateLimitedError) as e:
                logger.info(
                    "Disable OTP rejected",
                    extra={"user_id": str(user_id), "error_code": e.code},
                )

        if verified_by is None and backup_code:
            if await self._guard_guessing(user_id, ctx):
                if await self.codes.consume_backup_code(user_id, backup_code):
                    verified_by = "backup_code"

        if verified_by is None:
            await self.audit.record(
                AuditEvent.TWOFA_DISABLED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"reason": "invalid_verification"},
            )
            raise BadRequestError("invalid OTP or backup code", code="INVALID_VERIFICATION")

        await self.store.disable_2fa(user_id)
        revoked = await self.store.revoke_all_trusted_devices(user_id, DISABLE_REVOKE_REASON)

        await self.audit.record(
            AuditEvent.TWOFA_DISABLED,
            EventStatus.SUCCESS,
            user_id,
            ctx,
            details={"verified_by": verified_by, "devices_revoked": revoked},
        )
        log_security_event(
            None,
            event_type="2fa_disabled",
            outcome="allow",
            user_id=str(user_id),
            request_id=ctx.request_id,
            verified_by=verified_by,
        )

    # OTP

    @translate_store_errors
    async def send_otp(
        self,
        user_id: UUID,
        phone_number: str | None,
        purpose: OTPPurpose,
        ctx: ClientContext,
    ) -> IssuedOTP:
        purpose = OTPPurpose(purpose)
        if not phone_number:
            await self.audit.record(
                AuditEvent.OTP_SENT,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"purpose": purpose.value, "reason": "missing_phone"},
            )
            raise BadRequestError("phone number required", code="PHONE_REQUIRED")
        return await self.otp.send_otp(user_id, phone_number, purpose.value, ctx)

    @translate_store_errors
    async def verify_otp(
        self,
        user_id: UUID,
        code: str,
        purpose: OTPPurpose,
        ctx: ClientContext,
    ) -> None:
        """Verify an OTP. Passing an enable_2fa OTP also proves the phone."""
        purpose = OTPPurpose(purpose)
        await self.otp.verify_otp(user_id, code, purpose.value, ctx)
        if purpose in (OTPPurpose.ENABLE_2FA, OTPPurpose.PHONE_VERIFICATION):
            await self.store.set_phone_verified(user_id)

    @translate_store_errors
    async def verify_phone(self, user_id: UUID, code: str, ctx: ClientContext) -> None:
        try:
            await self.otp.verify_otp(
                user_id, code, OTPPurpose.PHONE_VERIFICATION.value, ctx, audit=False
            )
        except AppError as e:
            await self.audit.record(
                AuditEvent.PHONE_VERIFIED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"reason": e.code},
            )
            raise
        await self.store.set_phone_verified(user_id)
        await self.audit.record(AuditEvent.PHONE_VERIFIED, EventStatus.SUCCESS, user_id, ctx)

    # TOTP and backup codes

    async def _guard_guessing(self, user_id: UUID, ctx: ClientContext) -> bool:
        """Count one TOTP/backup-code guess against the user. False when over the limit."""
        limit = await self.rate_limiter.check(
            str(user_id),
            IdentifierKind.USER.value,
            settings.RL_VERIFY_USER_LIMIT,
            settings.RL_VERIFY_USER_WINDOW,
        )
        if not limit.allowed:
            log_security_event(
                None,
                event_type="second_factor_guess",
                outcome="deny",
                reason_code="RATE_LIMITED",
                user_id=str(user_id),
                request_id=ctx.request_id,
            )
        return limit.allowed

    @translate_store_errors
    async def verify_totp(self, user_id: UUID, code: str, ctx: ClientContext) -> None:
        """Check a TOTP code; the first success marks TOTP as verified."""
        if not await self.store.get_totp_secret(user_id):
            await self.audit.record(
                AuditEvent.TOTP_VERIFIED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"reason": "not_configured"},
            )
            raise BadRequestError("TOTP not configured", code="TOTP_NOT_CONFIGURED")

        if not await self._guard_guessing(user_id, ctx):
            await self.audit.record(
                AuditEvent.TOTP_VERIFIED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"reason": "rate_limited"},
            )
            raise RateLimitedError("too many verification attempts")

        if not await self.codes.verify_totp(user_id, code):
            await self.audit.record(
                AuditEvent.TOTP_VERIFIED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"reason": "invalid_totp"},
            )
            raise BadRequestError("invalid TOTP", code="INVALID_TOTP")

        row = await self.store.get_settings(user_id)
        first_use = row is not None and row.totp_verified_at is None
        if first_use:
            await self.store.set_totp_verified(user_id)
        await self.audit.record(
            AuditEvent.TOTP_VERIFIED,
            EventStatus.SUCCESS,
            user_id,
            ctx,
            details={"first_use": first_use},
        )

    @translate_store_errors
    async def verify_backup_code(self, user_id: UUID, code: str, ctx: ClientContext) -> None:
        if not await self._guard_guessing(user_id, ctx):
            await self.audit.record(
                AuditEvent.BACKUP_CODE_USED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"reason": "rate_limited"},
            )
            raise RateLimitedError("too many verification attempts")

        code_id = await self.codes.consume_backup_code(user_id, code)
        if code_id is None:
            await self.audit.record(
                AuditEvent.BACKUP_CODE_USED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"reason": "invalid_backup_code"},
            )
            raise BadRequestError("invalid backup code", code="INVALID_BACKUP_CODE")

        await self.audit.record(
            AuditEvent.BACKUP_CODE_USED,
            EventStatus.SUCCESS,
            user_id,
            ctx,
            related_entity_type="backup_code",
            related_entity_id=code_id,
        )

    @translate_store_errors
    async def regenerate_backup_codes(self, user_id: UUID, otp: str, ctx: ClientContext) -> list[str]:
        """Replace backup codes after proof by a fresh enable_2fa OTP."""
        row = await self.store.get_settings(user_id)
        if row is None or not row.enabled:
            await self.audit.record(
                AuditEvent.BACKUP_CODES_REGENERATED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"reason": "not_enabled"},
            )
            raise BadRequestError("2FA is not enabled", code="TWOFA_NOT_ENABLED")

        try:
            await self.otp.verify_otp(user_id, otp, OTPPurpose.ENABLE_2FA.value, ctx, audit=False)
        except AppError as e:
            await self.audit.record(
                AuditEvent.BACKUP_CODES_REGENERATED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"reason": e.code},
            )
            raise

        codes = await self.codes.issue_backup_codes(user_id)
        await self.audit.record(
            AuditEvent.BACKUP_CODES_REGENERATED,
            EventStatus.SUCCESS,
            user_id,
            ctx,
            details={"count": len(codes)},
        )
        return codes

    # Trusted devices

    async def _create_device(
        self, user_id: UUID, ctx: ClientContext, device_name: str | None
    ) -> tuple[TrustedDevice, IssuedDeviceToken]:
        token = generate_secure_token()
        now = self.clock()
        device = await self.store.create_trusted_device(
            TrustedDevice(
                user_id=user_id,
                device_token_hash=hash_token(token),
                device_fingerprint=ctx.device_fingerprint,
                device_name=device_name or device_name_from_user_agent(ctx.user_agent),
                trusted_at=now,
                expires_at=now + timedelta(days=settings.TRUSTED_DEVICE_TTL_DAYS),
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
            )
        )
        return device, IssuedDeviceToken(device_id=device.id, token=token, expires_at=device.expires_at)

    @translate_store_errors
    async def trust_device(
        self, user_id: UUID, ctx: ClientContext, device_name: str | None = None
    ) -> IssuedDeviceToken:
        device, issued = await self._create_device(user_id, ctx, device_name)
        await self.audit.record(
            AuditEvent.DEVICE_TRUSTED,
            EventStatus.SUCCESS,
            user_id,
            ctx,
            details={"device_name": device.device_name},
            related_entity_type="trusted_device",
            related_entity_id=device.id,
        )
        return issued

    @translate_store_errors
    async def validate_trusted_device(self, user_id: UUID, token: str | None) -> bool:
        """True iff the token belongs to this user and is neither revoked nor expired."""
        return await self._match_trusted_device(user_id, token) is not None

    async def _match_trusted_device(self, user_id: UUID, token: str | None) -> TrustedDevice | None:
        if not token:
            return None
        device = await self.store.get_trusted_device_by_token(hash_token(token))
        if device is None or device.user_id != user_id:
            return None
        await self.store.update_device_last_used(device.id)
        return device

    @translate_store_errors
    async def list_trusted_devices(
        self, user_id: UUID, current_token: str | None = None
    ) -> list[DeviceView]:
        current_hash = hash_token(current_token) if current_token else None
        return [
            DeviceView(
                id=device.id,
                name=device.device_name or "Unknown Device",
                trusted_at=device.trusted_at,
                last_used_at=device.last_used_at,
                ip_address=device.ip_address,
                is_current=current_hash is not None and device.device_token_hash == current_hash,
            )
            for device in await self.store.list_trusted_devices(user_id)
        ]

    @translate_store_errors
    async def revoke_trusted_device(self, user_id: UUID, device_id: UUID, ctx: ClientContext) -> None:
        device = await self.store.get_trusted_device(device_id)
        if device is None or device.revoked_at is not None:
            await self.audit.record(
                AuditEvent.DEVICE_REVOKED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"device_id": str(device_id), "reason": "not_found"},
            )
            raise NotFoundError("device not found", code="DEVICE_NOT_FOUND")

        if device.user_id != user_id:
            await self.audit.record(
                AuditEvent.DEVICE_REVOKED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"device_id": str(device_id), "reason": "not_owner"},
            )
            raise ForbiddenError("device belongs to another user")

        if not await self.store.revoke_trusted_device(device_id, USER_REVOKE_REASON):
            raise NotFoundError("device not found", code="DEVICE_NOT_FOUND")

        await self.audit.record(
            AuditEvent.DEVICE_REVOKED,
            EventStatus.SUCCESS,
            user_id,
            ctx,
            details={"device_id": str(device_id), "reason": USER_REVOKE_REASON},
            related_entity_type="trusted_device",
            related_entity_id=device_id,
        )

    # Pending login

    async def _create_pending(
        self, user_id: UUID, ctx: ClientContext, role: str | None
    ) -> IssuedPendingLogin:
        token = generate_secure_token()
        now = self.clock()
        pending = await self.store.create_pending_login(
            PendingLogin(
                user_id=user_id,
                session_token_hash=hash_token(token),
                role=role,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                expires_at=now + timedelta(minutes=settings.PENDING_LOGIN_EXPIRY_MINUTES),
                created_at=now,
            )
        )
        return IssuedPendingLogin(pending_id=pending.id, session_token=token, expires_at=pending.expires_at)

    @translate_store_errors
    async def create_pending_login(
        self, user_id: UUID, ctx: ClientContext, role: str | None = None
    ) -> IssuedPendingLogin:
        issued = await self._create_pending(user_id, ctx, role)
        await self.audit.record(
            AuditEvent.PENDING_LOGIN_CREATED,
            EventStatus.SUCCESS,
            user_id,
            ctx,
            related_entity_type="pending_login",
            related_entity_id=issued.pending_id,
        )
        return issued

    @translate_store_errors
    async def validate_pending_login(self, session_token: str) -> PendingLogin:
        pending = None
        if session_token:
            pending = await self.store.get_pending_login_by_token(hash_token(session_token))
        if pending is None:
            raise BadRequestError("invalid or expired session", code="INVALID_SESSION")
        return pending

    @translate_store_errors
    async def complete_pending_login(self, session_token: str, ctx: ClientContext) -> None:
        pending = await self.validate_pending_login(session_token)
        if not await self.store.complete_pending_login(pending.id):
            raise BadRequestError("invalid or expired session", code="INVALID_SESSION")
        await self.audit.record(
            AuditEvent.LOGIN_COMPLETED,
            EventStatus.SUCCESS,
            pending.user_id,
            ctx,
            related_entity_type="pending_login",
            related_entity_id=pending.id,
        )

    @translate_store_errors
    async def begin_login(
        self,
        user_id: UUID,
        ctx: ClientContext,
        phone_number: str | None = None,
        role: str | None = None,
        trusted_device_token: str | None = None,
    ) -> LoginChallenge:
        """
        Decide whether a password-verified login needs a second factor.

        Users without 2FA, and users presenting a valid trusted-device token, go
        straight through. Everyone else gets a pending-login session; SMS users
        are also sent a login OTP.
        """
        row = await self.store.get_settings(user_id)
        if row is None or not row.enabled:
            return LoginChallenge(requires_2fa=False)

        device = await self._match_trusted_device(user_id, trusted_device_token)
        if device is not None:
            log_security_event(
                None,
                event_type="login_2fa",
                outcome="allow",
                reason_code="TRUSTED_DEVICE",
                user_id=str(user_id),
                request_id=ctx.request_id,
            )
            await self.audit.record(
                AuditEvent.TRUSTED_DEVICE_USED,
                EventStatus.SUCCESS,
                user_id,
                ctx,
                details={"device_id": str(device.id), "method": row.method},
                related_entity_type="trusted_device",
                related_entity_id=device.id,
            )
            return LoginChallenge(requires_2fa=False, trusted_device=True)

        method = TwoFAMethod(row.method)
        if method == TwoFAMethod.SMS and not phone_number:
            await self.audit.record(
                AuditEvent.PENDING_LOGIN_CREATED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"method": method.value, "reason": "missing_phone"},
            )
            raise BadRequestError("phone number required", code="PHONE_REQUIRED")

        issued = await self._create_pending(user_id, ctx, role)
        challenge = LoginChallenge(
            requires_2fa=True,
            method=method.value,
            session_token=issued.session_token,
            expires_at=issued.expires_at,
        )

        details: dict[str, Any] = {"method": method.value}
        if method.uses_sms and phone_number:
            try:
                sent = await self.otp.send_otp(
                    user_id, phone_number, OTPPurpose.LOGIN.value, ctx, audit=False
                )
            except AppError as e:
                await self.audit.record(
                    AuditEvent.PENDING_LOGIN_CREATED,
                    EventStatus.FAILURE,
                    user_id,
                    ctx,
                    details={**details, "reason": e.code},
                    related_entity_type="pending_login",
                    related_entity_id=issued.pending_id,
                )
                raise
            challenge.otp_destination = sent.destination_masked
            details["destination"] = sent.destination_masked

        await self.audit.record(
            AuditEvent.PENDING_LOGIN_CREATED,
            EventStatus.SUCCESS,
            user_id,
            ctx,
            details=details,
            related_entity_type="pending_login",
            related_entity_id=issued.pending_id,
        )
        return challenge

    @translate_store_errors
    async def complete_login(
        self,
        session_token: str,
        ctx: ClientContext,
        otp: str | None = None,
        totp_code: str | None = None,
        backup_code: str | None = None,
        trust_device: bool = False,
        device_name: str | None = None,
    ) -> LoginResult:
        """
        Finish a pending login with one proof (login OTP, TOTP code or backup code).

        The session is single use. On success an access token is issued and,
        if asked, the device is trusted.
        """
        pending = await self.validate_pending_login(session_token)
        user_id = pending.user_id

        async def fail(reason: str) -> None:
            await self.audit.record(
                AuditEvent.LOGIN_COMPLETED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"reason": reason},
                related_entity_type="pending_login",
                related_entity_id=pending.id,
            )

        verified_by = None
        try:
            if otp:
                await self.otp.verify_otp(user_id, otp, OTPPurpose.LOGIN.value, ctx, audit=False)
                verified_by = "otp"
            elif totp_code:
                if not await self._guard_guessing(user_id, ctx):
                    raise RateLimitedError("too many verification attempts")
                if await self.codes.verify_totp(user_id, totp_code):
                    verified_by = "totp"
            elif backup_code:
                if not await self._guard_guessing(user_id, ctx):
                    raise RateLimitedError("too many verification attempts")
                if await self.codes.consume_backup_code(user_id, backup_code):
                    verified_by = "backup_code"
        except AppError as e:
            await fail(e.code)
            raise

        if verified_by is None:
            await fail("invalid_verification")
            raise BadRequestError("invalid verification code", code="INVALID_VERIFICATION")

        if not await self.store.complete_pending_login(pending.id):
            await fail("session_consumed")
            raise BadRequestError("invalid or expired session", code="INVALID_SESSION")

        if verified_by == "totp":
            row = await self.store.get_settings(user_id)
            if row is not None and row.totp_verified_at is None:
                await self.store.set_totp_verified(user_id)

        details: dict[str, Any] = {"verified_by": verified_by}
        device_token = None
        if trust_device:
            device, device_token = await self._create_device(user_id, ctx, device_name)
            details["trusted_device_id"] = str(device.id)

        await self.audit.record(
            AuditEvent.LOGIN_COMPLETED,
            EventStatus.SUCCESS,
            user_id,
            ctx,
            details=details,
            related_entity_type="pending_login",
            related_entity_id=pending.id,
        )
        log_security_event(
            None,
            event_type="2fa_login",
            outcome="allow",
            user_id=str(user_id),
            request_id=ctx.request_id,
            verified_by=verified_by,
        )
        return LoginResult(
            user_id=user_id,
            access_token=create_access_token(str(user_id), pending.role or "RIDER"),
            verified_by=verified_by,
            device_token=device_token,
            details=details,
        )

    # OTP verify with device trust (HTTP otp/verify convenience)

    @translate_store_errors
    async def verify_otp_and_trust(
        self,
        user_id: UUID,
        code: str,
        purpose: OTPPurpose,
        ctx: ClientContext,
        device_name: str | None = None,
    ) -> IssuedDeviceToken:
        """Verify an OTP and trust the calling device, recorded as one otp_verified decision."""
        purpose = OTPPurpose(purpose)
        try:
            otp = await self.otp.verify_otp(user_id, code, purpose.value, ctx, audit=False)
        except AppError as e:
            await self.audit.record(
                AuditEvent.OTP_VERIFIED,
                EventStatus.FAILURE,
                user_id,
                ctx,
                details={"purpose": purpose.value, "reason": e.code},
            )
            raise
        if purpose in (OTPPurpose.ENABLE_2FA, OTPPurpose.PHONE_VERIFICATION):
            await self.store.set_phone_verified(user_id)
        device, issued = await self._create_device(user_id, ctx, device_name)
        await self.audit.record(
            AuditEvent.OTP_VERIFIED,
            EventStatus.SUCCESS,
            user_id,
            ctx,
            details={"purpose": purpose.value, "trusted_device_id": str(device.id)},
            related_entity_type="otp_challenge",
            related_entity_id=otp.id,
        )
        return issued

    # Administration

    @translate_store_errors
    async def purge_user(self, user_id: UUID) -> None:
        """Delete every 2FA record the user owns."""
        await self.store.purge_user(user_id)
        logger.info("2FA data purged", extra={"user_id": str(user_id)})

    @translate_store_errors
    async def list_audit(self, user_id: UUID, limit: int = 50):
        return await self.store.list_audit_for_user(user_id, limit)

    @translate_store_errors
    async def clear_rate_limit(
        self, identifier: str, kind: IdentifierKind, ctx: ClientContext, actor_id: UUID | None = None
    ) -> bool:
        cleared = await self.rate_limiter.reset(identifier, IdentifierKind(kind).value)
        await self.audit.record(
            AuditEvent.RATE_LIMIT_CLEARED,
            EventStatus.SUCCESS if cleared else EventStatus.FAILURE,
            actor_id,
            ctx,
            details={"kind": IdentifierKind(kind).value, "cleared": cleared},
        )
        return cleared
