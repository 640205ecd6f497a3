"""Two-factor authentication models."""

import uuid
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.sql import func

from twofa.db.base import Base


class TwoFAMethod(str, Enum):
    """Second factor a user has enrolled."""

    SMS = "sms"
    TOTP = "totp"
    BOTH = "both"

    @property
    def uses_sms(self) -> bool:
        return self in (TwoFAMethod.SMS, TwoFAMethod.BOTH)

    @property
    def uses_totp(self) -> bool:
        return self in (TwoFAMethod.TOTP, TwoFAMethod.BOTH)


class OTPPurpose(str, Enum):
    """What an OTP challenge is allowed to authorize."""

    LOGIN = "login"
    PHONE_VERIFICATION = "phone_verification"
    ENABLE_2FA = "enable_2fa"
    DISABLE_2FA = "disable_2fa"
    PASSWORD_RESET = "password_reset"


class DeliveryMethod(str, Enum):
    SMS = "sms"
    EMAIL = "email"


class IdentifierKind(str, Enum):
    """Kind of identifier a rate-limit counter is keyed by."""

    PHONE = "phone"
    EMAIL = "email"
    USER = "user"
    IP = "ip"


class OTPChallenge(Base):
    """One issued OTP. Only the Argon2 hash of the code is stored."""

    __tablename__ = "otp_challenges"
    __table_args__ = (Index("ix_otp_challenges_user_purpose", "user_id", "purpose"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    otp_hash = Column(String, nullable=False)
    purpose = Column(String(32), nullable=False)
    delivery_method = Column(String(16), nullable=False, default=DeliveryMethod.SMS.value)
    destination = Column(String(255), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class BackupCode(Base):
    """Single-use recovery code (hash only)."""

    __tablename__ = "backup_codes"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    code_hash = Column(String, nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class TrustedDevice(Base):
    """Device that may skip the second factor until it expires or is revoked."""

    __tablename__ = "trusted_devices"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    device_token_hash = Column(String(64), unique=True, nullable=False, index=True)
    device_fingerprint = Column(String(255), nullable=True)
    device_name = Column(String(255), nullable=True)
    trusted_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoked_reason = Column(String(255), nullable=True)


class PendingLogin(Base):
    """Password-verified login waiting for its second factor."""

    __tablename__ = "pending_logins"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    session_token_hash = Column(String(64), unique=True, nullable=False, index=True)
    role = Column(String(32), nullable=True)  # carried into the access token on completion
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class TwoFASettings(Base):
    """Per-user 2FA configuration. The TOTP secret is Fernet-encrypted."""

    __tablename__ = "user_2fa_settings"

    user_id = Column(Uuid, primary_key=True)
    enabled = Column(Boolean, nullable=False, default=False)
    method = Column(String(16), nullable=False, default=TwoFAMethod.SMS.value)
    totp_secret_encrypted = Column(String, nullable=True)
    phone_verified_at = Column(DateTime(timezone=True), nullable=True)
    totp_verified_at = Column(DateTime(timezone=True), nullable=True)
    enabled_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class RateLimitCounter(Base):
    """Fixed-window counter with lockout. `version` guards compare-and-swap updates."""

    __tablename__ = "rate_limits"
    __table_args__ = (UniqueConstraint("identifier", "kind", name="uq_rate_limits_identifier_kind"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    identifier = Column(String(255), nullable=False)
    kind = Column(String(16), nullable=False)
    request_count = Column(Integer, nullable=False, default=0)
    window_start = Column(DateTime(timezone=True), nullable=False)
    window_duration = Column(Integer, nullable=False)  # seconds
    max_requests = Column(Integer, nullable=False)
    locked_until = Column(DateTime(timezone=True), nullable=True)
    lock_reason = Column(String(64), nullable=True)
    version = Column(Integer, nullable=False, default=0)
