"""2FA request and response schemas."""

from datetime import datetime
from typing import Generic, TypeVar
from uuid import UUID

from pydantic import BaseModel, Field

from twofa.core.config import settings
from twofa.models import IdentifierKind, OTPPurpose, TwoFAMethod

T = TypeVar("T")

OTP_PATTERN = rf"^\d{{{settings.OTP_LENGTH}}}$"
OPTIONAL_OTP_PATTERN = rf"^(\d{{{settings.OTP_LENGTH}}})?$"
TOTP_PATTERN = rf"^\d{{{settings.TOTP_DIGITS}}}$"


class SuccessResponse(BaseModel, Generic[T]):
    """Success envelope: {success: true, data}."""

    success: bool = True
    data: T


class OkResponse(BaseModel):
    success: bool = True


# OTP


class SendOTPRequest(BaseModel):
    """Send OTP request."""

    otp_type: OTPPurpose


class SendOTPResponse(BaseModel):
    message: str = "OTP sent successfully"
    destination_masked: str
    expires_at: datetime


class VerifyOTPRequest(BaseModel):
    """Verify OTP request. With trust_device the calling device is remembered."""

    otp: str = Field(pattern=OTP_PATTERN)
    otp_type: OTPPurpose
    trust_device: bool = False
    device_name: str | None = Field(default=None, max_length=255)


class VerifyOTPResponse(BaseModel):
    success: bool = True
    device_token: str | None = None  # Returned once when trust_device was requested


# Enrolment


class EnableRequest(BaseModel):
    method: TwoFAMethod = TwoFAMethod.SMS


class EnableResponse(BaseModel):
    """Enable response. Secret and backup codes are shown once."""

    method: TwoFAMethod
    totp_secret: str | None = None
    totp_qr_url: str | None = None
    backup_codes: list[str]
    requires_otp: bool
    otp_destination: str | None = None


class DisableRequest(BaseModel):
    """Disable request. OTP (purpose disable_2fa) is tried before the backup code."""

    otp: str | None = Field(default=None, pattern=OPTIONAL_OTP_PATTERN)
    backup_code: str | None = Field(default=None, max_length=32)


class StatusResponse(BaseModel):
    enabled: bool
    method: TwoFAMethod
    phone_verified: bool
    totp_verified: bool
    backup_codes_count: int
    trusted_devices_count: int
    enabled_at: datetime | None = None


class RegenerateBackupCodesRequest(BaseModel):
    otp: str = Field(pattern=OTP_PATTERN)


class BackupCodesResponse(BaseModel):
    backup_codes: list[str]


# Phone / TOTP


class PhoneSendRequest(BaseModel):
    phone_number: str | None = Field(default=None, pattern=r"^\+?[0-9]{7,15}$")


class PhoneVerifyRequest(BaseModel):
    otp: str = Field(pattern=OTP_PATTERN)


class TOTPVerifyRequest(BaseModel):
    code: str = Field(pattern=TOTP_PATTERN)


# Devices


class TrustedDeviceResponse(BaseModel):
    id: UUID
    name: str
    trusted_at: datetime
    last_used_at: datetime | None = None
    ip: str | None = None
    is_current: bool


class TrustedDevicesResponse(BaseModel):
    devices: list[TrustedDeviceResponse]


# Login handshake


class LoginVerifyRequest(BaseModel):
    """Second step of a 2FA login. Exactly one proof is expected."""

    session_token: str = Field(min_length=1, max_length=128)
    otp: str | None = Field(default=None, pattern=OPTIONAL_OTP_PATTERN)
    totp_code: str | None = Field(default=None, pattern=rf"^(\d{{{settings.TOTP_DIGITS}}})?$")
    backup_code: str | None = Field(default=None, max_length=32)
    trust_device: bool = False
    device_name: str | None = Field(default=None, max_length=255)


class LoginVerifyResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    verified_by: str
    device_token: str | None = None


# Administration


class RateLimitStateResponse(BaseModel):
    identifier: str
    kind: IdentifierKind
    request_count: int
    window_start: datetime | None = None
    window_seconds: int | None = None
    max_requests: int | None = None
    locked_until: datetime | None = None
    lock_reason: str | None = None


class AuditRecordResponse(BaseModel):
    id: UUID
    user_id: UUID | None = None
    event_type: str
    event_status: str
    details: dict | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    related_entity_type: str | None = None
    related_entity_id: UUID | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class AuditRecordsResponse(BaseModel):
    records: list[AuditRecordResponse]
