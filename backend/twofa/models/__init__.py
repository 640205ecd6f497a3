"""Database models."""

# Import all models here so metadata.create_all sees every table
from twofa.models.audit import AuditEvent, AuthAuditLog, EventStatus
from twofa.models.twofa import (
    BackupCode,
    DeliveryMethod,
    IdentifierKind,
    OTPChallenge,
    OTPPurpose,
    PendingLogin,
    RateLimitCounter,
    TrustedDevice,
    TwoFAMethod,
    TwoFASettings,
)

__all__ = [
    "AuditEvent",
    "AuthAuditLog",
    "EventStatus",
    "BackupCode",
    "DeliveryMethod",
    "IdentifierKind",
    "OTPChallenge",
    "OTPPurpose",
    "PendingLogin",
    "RateLimitCounter",
    "TrustedDevice",
    "TwoFAMethod",
    "TwoFASettings",
]
