"""Authentication audit log model (append-only)."""

import uuid
from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Index, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from twofa.db.base import Base


class AuditEvent(str, Enum):
    OTP_SENT = "otp_sent"
    OTP_VERIFIED = "otp_verified"
    TOTP_VERIFIED = "totp_verified"
    BACKUP_CODE_USED = "backup_code_used"
    TWOFA_ENABLED = "2fa_enabled"
    TWOFA_DISABLED = "2fa_disabled"
    BACKUP_CODES_REGENERATED = "backup_codes_regenerated"
    PHONE_VERIFIED = "phone_verified"
    DEVICE_TRUSTED = "device_trusted"
    DEVICE_REVOKED = "device_revoked"
    DEVICES_REVOKED_ALL = "devices_revoked_all"
    TRUSTED_DEVICE_USED = "trusted_device_used"
    PENDING_LOGIN_CREATED = "pending_login_created"
    LOGIN_COMPLETED = "login_completed"
    RATE_LIMIT_CLEARED = "rate_limit_cleared"


class EventStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class AuthAuditLog(Base):
    """One audited 2FA decision. `user_id` is cleared, not deleted, when a user is purged."""

    __tablename__ = "auth_audit_log"
    __table_args__ = (Index("ix_auth_audit_log_user_created", "user_id", "created_at"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=True)
    event_type = Column(String(64), nullable=False, index=True)
    event_status = Column(String(16), nullable=False)
    details = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    device_fingerprint = Column(String(255), nullable=True)
    related_entity_type = Column(String(64), nullable=True)
    related_entity_id = Column(Uuid, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
