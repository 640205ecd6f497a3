"""Durable storage for OTP challenges, backup codes, devices, pending logins, settings and audit.

Every public coroutine runs in its own short transaction and is bounded by
STORE_CALL_TIMEOUT_SECONDS. Conditional updates (attempt increments, single-use
transitions) are expressed as guarded UPDATE statements so they stay atomic
across workers.
"""

import asyncio
import functools
import hashlib
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from twofa.core.clock import Clock, ensure_utc, utcnow
from twofa.core.config import settings
from twofa.core.logging import get_logger
from twofa.models import (
    AuthAuditLog,
    BackupCode,
    IdentifierKind,
    OTPChallenge,
    PendingLogin,
    RateLimitCounter,
    TrustedDevice,
    TwoFASettings,
)

logger = get_logger(__name__)

T = TypeVar("T")


class StoreError(Exception):
    """Storage failure. Never shown to clients verbatim."""


class RecordConflictError(StoreError):
    """Insert collided with an existing row."""


class RecordGoneError(StoreError):
    """Single-use record was already consumed."""


def store_call(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Bound a store coroutine by the per-call timeout and map driver errors to StoreError."""

    @functools.wraps(func)
    async def wrapper(self: "CredentialStore", *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.wait_for(func(self, *args, **kwargs), timeout=self.call_timeout)
        except StoreError:
            raise
        except asyncio.TimeoutError as e:
            logger.error("Store call timed out", extra={"operation": func.__name__})
            raise StoreError(f"{func.__name__} timed out") from e
        except IntegrityError as e:
            raise RecordConflictError(f"{func.__name__} conflicted with an existing record") from e
        except SQLAlchemyError as e:
            logger.error(
                "Store call failed",
                extra={"operation": func.__name__, "error_type": type(e).__name__},
            )
            raise StoreError(f"{func.__name__} failed") from e

    return wrapper


def _advisory_key(*parts: Any) -> int:
    digest = hashlib.sha256(":".join(str(p) for p in parts).encode()).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


class CredentialStore:
    """SQLAlchemy-backed credential store."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utcnow,
        call_timeout: float | None = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.call_timeout = call_timeout or settings.STORE_CALL_TIMEOUT_SECONDS

    async def _lock_otp_slot(self, session: AsyncSession, user_id: UUID, purpose: str) -> None:
        # SQLite serializes writers already; PostgreSQL needs an explicit lock
        if session.bind.dialect.name == "postgresql":
            await session.execute(
                select(func.pg_advisory_xact_lock(_advisory_key("otp", user_id, purpose)))
            )

    # OTP challenges

    @store_call
    async def create_otp(self, otp: OTPChallenge) -> OTPChallenge:
        """Insert a challenge, expiring any other active one for the same user and purpose."""
        now = self.clock()
        if otp.created_at is None:
            otp.created_at = now
        if otp.attempts is None:
            otp.attempts = 0
        async with self.session_factory() as session:
            async with session.begin():
                await self._lock_otp_slot(session, otp.user_id, otp.purpose)
                await session.execute(
                    update(OTPChallenge)
                    .where(
                        OTPChallenge.user_id == otp.user_id,
                        OTPChallenge.purpose == otp.purpose,
                        OTPChallenge.verified_at.is_(None),
                        OTPChallenge.expires_at > now,
                    )
                    .values(expires_at=now)
                )
                session.add(otp)
        return otp

    @store_call
    async def get_active_otp(self, user_id: UUID, purpose: str) -> OTPChallenge | None:
        now = self.clock()
        async with self.session_factory() as session:
            result = await session.execute(
                select(OTPChallenge)
                .where(
                    OTPChallenge.user_id == user_id,
                    OTPChallenge.purpose == purpose,
                    OTPChallenge.expires_at > now,
                    OTPChallenge.verified_at.is_(None),
                )
                .order_by(OTPChallenge.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    @store_call
    async def increment_otp_attempts(self, otp_id: UUID) -> bool:
        """Atomically add one attempt. False when the budget is spent or the challenge is inactive."""
        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(OTPChallenge)
                    .where(
                        OTPChallenge.id == otp_id,
                        OTPChallenge.attempts < OTPChallenge.max_attempts,
                        OTPChallenge.verified_at.is_(None),
                        OTPChallenge.expires_at > now,
                    )
                    .values(attempts=OTPChallenge.attempts + 1)
                )
        return result.rowcount == 1

    @store_call
    async def mark_otp_verified(self, otp_id: UUID) -> bool:
        """Set verified_at once. False if already consumed, expired or superseded."""
        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(OTPChallenge)
                    .where(
                        OTPChallenge.id == otp_id,
                        OTPChallenge.verified_at.is_(None),
                        OTPChallenge.expires_at > now,
                    )
                    .values(verified_at=now)
                )
        return result.rowcount == 1

    @store_call
    async def invalidate_user_otps(self, user_id: UUID, purpose: str) -> int:
        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                await self._lock_otp_slot(session, user_id, purpose)
                result = await session.execute(
                    update(OTPChallenge)
                    .where(
                        OTPChallenge.user_id == user_id,
                        OTPChallenge.purpose == purpose,
                        OTPChallenge.verified_at.is_(None),
                        OTPChallenge.expires_at > now,
                    )
                    .values(expires_at=now)
                )
        return result.rowcount

    @store_call
    async def get_otp(self, otp_id: UUID) -> OTPChallenge | None:
        async with self.session_factory() as session:
            return await session.get(OTPChallenge, otp_id)

    # Backup codes

    @store_call
    async def create_backup_codes(self, user_id: UUID, code_hashes: list[str]) -> None:
        """Replace the user's unused backup codes with a new set in one transaction."""
        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(BackupCode).where(
                        BackupCode.user_id == user_id, BackupCode.used_at.is_(None)
                    )
                )
                session.add_all(
                    [BackupCode(user_id=user_id, code_hash=h, created_at=now) for h in code_hashes]
                )

    @store_call
    async def get_unused_backup_codes(self, user_id: UUID) -> list[BackupCode]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BackupCode)
                .where(BackupCode.user_id == user_id, BackupCode.used_at.is_(None))
                .order_by(BackupCode.created_at)
            )
            return list(result.scalars().all())

    @store_call
    async def count_unused_backup_codes(self, user_id: UUID) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(BackupCode)
                .where(BackupCode.user_id == user_id, BackupCode.used_at.is_(None))
            )
            return result.scalar_one()

    @store_call
    async def use_backup_code(self, code_id: UUID) -> None:
        """Consume a code. Raises RecordGoneError when it was already used."""
        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(BackupCode)
                    .where(BackupCode.id == code_id, BackupCode.used_at.is_(None))
                    .values(used_at=now)
                )
        if result.rowcount != 1:
            raise RecordGoneError("backup code already used")

    # Trusted devices

    @store_call
    async def create_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        async with self.session_factory() as session:
            async with session.begin():
                session.add(device)
        return device

    @store_call
    async def get_trusted_device_by_token(self, token_hash: str) -> TrustedDevice | None:
        """Look up a device by token digest. Revoked or expired devices are not returned."""
        now = self.clock()
        async with self.session_factory() as session:
            result = await session.execute(
                select(TrustedDevice).where(
                    TrustedDevice.device_token_hash == token_hash,
                    TrustedDevice.revoked_at.is_(None),
                    TrustedDevice.expires_at > now,
                )
            )
            return result.scalar_one_or_none()

    @store_call
    async def get_trusted_device(self, device_id: UUID) -> TrustedDevice | None:
        async with self.session_factory() as session:
            return await session.get(TrustedDevice, device_id)

    @store_call
    async def update_device_last_used(self, device_id: UUID) -> None:
        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(TrustedDevice)
                    .where(TrustedDevice.id == device_id)
                    .values(last_used_at=now)
                )

    @store_call
    async def list_trusted_devices(self, user_id: UUID) -> list[TrustedDevice]:
        now = self.clock()
        async with self.session_factory() as session:
            result = await session.execute(
                select(TrustedDevice)
                .where(
                    TrustedDevice.user_id == user_id,
                    TrustedDevice.revoked_at.is_(None),
                    TrustedDevice.expires_at > now,
                )
                .order_by(
                    TrustedDevice.last_used_at.desc().nulls_last(),
                    TrustedDevice.trusted_at.desc(),
                )
            )
            return list(result.scalars().all())

    @store_call
    async def count_trusted_devices(self, user_id: UUID) -> int:
        now = self.clock()
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(TrustedDevice)
                .where(
                    TrustedDevice.user_id == user_id,
                    TrustedDevice.revoked_at.is_(None),
                    TrustedDevice.expires_at > now,
                )
            )
            return result.scalar_one()

    @store_call
    async def revoke_trusted_device(self, device_id: UUID, reason: str) -> bool:
        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(TrustedDevice)
                    .where(TrustedDevice.id == device_id, TrustedDevice.revoked_at.is_(None))
                    .values(revoked_at=now, revoked_reason=reason)
                )
        return result.rowcount == 1

    @store_call
    async def revoke_all_trusted_devices(self, user_id: UUID, reason: str) -> int:
        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(TrustedDevice)
                    .where(TrustedDevice.user_id == user_id, TrustedDevice.revoked_at.is_(None))
                    .values(revoked_at=now, revoked_reason=reason)
                )
        return result.rowcount

    # Pending logins

    @store_call
    async def create_pending_login(self, pending: PendingLogin) -> PendingLogin:
        if pending.created_at is None:
            pending.created_at = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                session.add(pending)
        return pending

    @store_call
    async def get_pending_login_by_token(self, token_hash: str) -> PendingLogin | None:
        """Only sessions that are neither completed nor expired are returned."""
        now = self.clock()
        async with self.session_factory() as session:
            result = await session.execute(
                select(PendingLogin).where(
                    PendingLogin.session_token_hash == token_hash,
                    PendingLogin.completed_at.is_(None),
                    PendingLogin.expires_at > now,
                )
            )
            return result.scalar_one_or_none()

    @store_call
    async def complete_pending_login(self, pending_id: UUID) -> bool:
        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(PendingLogin)
                    .where(
                        PendingLogin.id == pending_id,
                        PendingLogin.completed_at.is_(None),
                        PendingLogin.expires_at > now,
                    )
                    .values(completed_at=now)
                )
        return result.rowcount == 1

    # Settings

    @store_call
    async def get_settings(self, user_id: UUID) -> TwoFASettings | None:
        async with self.session_factory() as session:
            return await session.get(TwoFASettings, user_id)

    @store_call
    async def enable_2fa(
        self, user_id: UUID, method: str, totp_secret_encrypted: str | None = None
    ) -> TwoFASettings:
        """Turn 2FA on. Raises RecordConflictError if it is already on."""
        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                row = await session.get(TwoFASettings, user_id, with_for_update=True)
                if row is None:
                    row = TwoFASettings(user_id=user_id, updated_at=now)
                    session.add(row)
                elif row.enabled:
                    raise RecordConflictError("2FA already enabled")
                row.enabled = True
                row.method = method
                row.totp_secret_encrypted = totp_secret_encrypted
                row.totp_verified_at = None
                row.enabled_at = now
                row.updated_at = now
        return row

    @store_call
    async def disable_2fa(self, user_id: UUID) -> None:
        """Turn 2FA off, dropping the TOTP secret and every remaining backup code."""
        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(TwoFASettings)
                    .where(TwoFASettings.user_id == user_id)
                    .values(
                        enabled=False,
                        totp_secret_encrypted=None,
                        totp_verified_at=None,
                        enabled_at=None,
                        updated_at=now,
                    )
                )
                await session.execute(delete(BackupCode).where(BackupCode.user_id == user_id))

    async def _upsert_settings(self, user_id: UUID, **values: Any) -> None:
        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                row = await session.get(TwoFASettings, user_id, with_for_update=True)
                if row is None:
                    row = TwoFASettings(user_id=user_id, enabled=False)
                    session.add(row)
                for key, value in values.items():
                    setattr(row, key, value)
                row.updated_at = now

    @store_call
    async def set_phone_verified(self, user_id: UUID) -> None:
        await self._upsert_settings(user_id, phone_verified_at=self.clock())

    @store_call
    async def set_totp_verified(self, user_id: UUID) -> None:
        await self._upsert_settings(user_id, totp_verified_at=self.clock())

    @store_call
    async def get_totp_secret(self, user_id: UUID) -> str | None:
        """Return the encrypted TOTP secret, or None."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(TwoFASettings.totp_secret_encrypted).where(TwoFASettings.user_id == user_id)
            )
            return result.scalar_one_or_none()

    # Audit

    @store_call
    async def append_audit(self, record: AuthAuditLog) -> AuthAuditLog:
        if record.created_at is None:
            record.created_at = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                session.add(record)
        return record

    @store_call
    async def list_audit_for_user(self, user_id: UUID, limit: int = 50) -> list[AuthAuditLog]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(AuthAuditLog)
                .where(AuthAuditLog.user_id == user_id)
                .order_by(AuthAuditLog.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # Rate-limit counters (read/clear only; RateLimiter owns the check)

    @store_call
    async def get_rate_limit(self, identifier: str, kind: str) -> RateLimitCounter | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RateLimitCounter).where(
                    RateLimitCounter.identifier == identifier, RateLimitCounter.kind == kind
                )
            )
            return result.scalar_one_or_none()

    @store_call
    async def clear_rate_limit(self, identifier: str, kind: str) -> bool:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(RateLimitCounter).where(
                        RateLimitCounter.identifier == identifier, RateLimitCounter.kind == kind
                    )
                )
        return result.rowcount > 0

    # Maintenance

    @store_call
    async def purge_user(self, user_id: UUID) -> None:
        """Delete every record owned by the user; audit rows keep their history anonymously."""
        async with self.session_factory() as session:
            async with session.begin():
                for model in (OTPChallenge, BackupCode, TrustedDevice, PendingLogin):
                    await session.execute(delete(model).where(model.user_id == user_id))
                await session.execute(delete(TwoFASettings).where(TwoFASettings.user_id == user_id))
                await session.execute(
                    delete(RateLimitCounter).where(
                        RateLimitCounter.identifier == str(user_id),
                        RateLimitCounter.kind == IdentifierKind.USER.value,
                    )
                )
                await session.execute(
                    update(AuthAuditLog)
                    .where(AuthAuditLog.user_id == user_id)
                    .values(user_id=None)
                )

    @store_call
    async def cleanup_expired(self, now: datetime | None = None) -> dict[str, int]:
        """Delete stale challenges, sessions and devices; reset elapsed rate-limit windows."""
        now = now or self.clock()
        counts: dict[str, int] = {}
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(OTPChallenge).where(OTPChallenge.expires_at < now - timedelta(days=1))
                )
                counts["otp_challenges"] = result.rowcount

                result = await session.execute(
                    delete(PendingLogin).where(PendingLogin.expires_at < now - timedelta(hours=1))
                )
                counts["pending_logins"] = result.rowcount

                result = await session.execute(
                    delete(TrustedDevice).where(
                        TrustedDevice.expires_at < now, TrustedDevice.revoked_at.is_(None)
                    )
                )
                counts["trusted_devices"] = result.rowcount

                # Window length is per row, so the elapsed check happens here
                rows = (await session.execute(select(RateLimitCounter))).scalars().all()
                reset = 0
                for row in rows:
                    window_end = ensure_utc(row.window_start) + timedelta(seconds=row.window_duration)
                    locked_until = ensure_utc(row.locked_until)
                    if window_end <= now and (locked_until is None or locked_until <= now):
                        row.request_count = 0
                        row.window_start = now
                        row.locked_until = None
                        row.lock_reason = None
                        row.version = row.version + 1
                        reset += 1
                counts["rate_limits"] = reset
        return counts
