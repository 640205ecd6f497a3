"""2FA endpoints."""

from uuid import UUID

from fastapi import APIRouter, Request, Response, status

from twofa.core.app_exceptions import BadRequestError
from twofa.core.config import settings
from twofa.core.dependencies import ClientCtx, CurrentPrincipal, Principal, TwoFAService
from twofa.models import OTPPurpose
from twofa.schemas.twofa import (
    BackupCodesResponse,
    DisableRequest,
    EnableRequest,
    EnableResponse,
    LoginVerifyRequest,
    LoginVerifyResponse,
    OkResponse,
    PhoneSendRequest,
    PhoneVerifyRequest,
    RegenerateBackupCodesRequest,
    SendOTPRequest,
    SendOTPResponse,
    StatusResponse,
    SuccessResponse,
    TOTPVerifyRequest,
    TrustedDeviceResponse,
    TrustedDevicesResponse,
    VerifyOTPRequest,
    VerifyOTPResponse,
)

router = APIRouter(prefix="/2fa", tags=["2FA"])


def _resolve_phone(principal: Principal, body_phone: str | None) -> str | None:
    """Pick the phone number according to PHONE_SOURCE_POLICY."""
    if settings.PHONE_SOURCE_POLICY == "request":
        return body_phone or principal.phone_number
    return principal.phone_number or body_phone


def _set_device_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=settings.TRUSTED_DEVICE_COOKIE_NAME,
        value=token,
        max_age=settings.TRUSTED_DEVICE_TTL_DAYS * 24 * 60 * 60,
        secure=settings.COOKIE_SECURE,
        httponly=True,
        samesite="lax",
    )


@router.post("/otp/send", response_model=SuccessResponse[SendOTPResponse])
async def send_otp(
    body: SendOTPRequest,
    principal: CurrentPrincipal,
    service: TwoFAService,
    ctx: ClientCtx,
) -> SuccessResponse[SendOTPResponse]:
    """Send an OTP of the given type to the caller's phone."""
    issued = await service.send_otp(principal.user_id, principal.phone_number, body.otp_type, ctx)
    return SuccessResponse(
        data=SendOTPResponse(
            destination_masked=issued.destination_masked,
            expires_at=issued.expires_at,
        )
    )


@router.post("/otp/verify", response_model=SuccessResponse[VerifyOTPResponse])
async def verify_otp(
    body: VerifyOTPRequest,
    response: Response,
    principal: CurrentPrincipal,
    service: TwoFAService,
    ctx: ClientCtx,
) -> SuccessResponse[VerifyOTPResponse]:
    """Verify an OTP; optionally trust the calling device."""
    if body.trust_device:
        issued = await service.verify_otp_and_trust(
            principal.user_id, body.otp, body.otp_type, ctx, device_name=body.device_name
        )
        _set_device_cookie(response, issued.token)
        return SuccessResponse(data=VerifyOTPResponse(device_token=issued.token))

    await service.verify_otp(principal.user_id, body.otp, body.otp_type, ctx)
    return SuccessResponse(data=VerifyOTPResponse())


@router.post("/enable", response_model=SuccessResponse[EnableResponse])
async def enable_2fa(
    body: EnableRequest,
    principal: CurrentPrincipal,
    service: TwoFAService,
    ctx: ClientCtx,
) -> SuccessResponse[EnableResponse]:
    """Enable 2FA. TOTP secret and backup codes are returned once."""
    result = await service.enable(
        principal.user_id,
        body.method,
        ctx,
        phone_number=principal.phone_number,
        account=principal.email or principal.phone_number,
    )
    return SuccessResponse(
        data=EnableResponse(
            method=result.method,
            totp_secret=result.totp_secret,
            totp_qr_url=result.totp_qr_url,
            backup_codes=result.backup_codes,
            requires_otp=result.requires_otp,
            otp_destination=result.otp_destination,
        )
    )


@router.post("/disable", response_model=SuccessResponse[OkResponse])
async def disable_2fa(
    body: DisableRequest,
    principal: CurrentPrincipal,
    service: TwoFAService,
    ctx: ClientCtx,
) -> SuccessResponse[OkResponse]:
    await service.disable(principal.user_id, ctx, otp=body.otp, backup_code=body.backup_code)
    return SuccessResponse(data=OkResponse())


@router.get("/status", response_model=SuccessResponse[StatusResponse])
async def get_status(
    principal: CurrentPrincipal,
    service: TwoFAService,
) -> SuccessResponse[StatusResponse]:
    result = await service.get_status(principal.user_id)
    return SuccessResponse(
        data=StatusResponse(
            enabled=result.enabled,
            method=result.method,
            phone_verified=result.phone_verified,
            totp_verified=result.totp_verified,
            backup_codes_count=result.backup_codes_count,
            trusted_devices_count=result.trusted_devices_count,
            enabled_at=result.enabled_at,
        )
    )


@router.post("/backup-codes/regenerate", response_model=SuccessResponse[BackupCodesResponse])
async def regenerate_backup_codes(
    body: RegenerateBackupCodesRequest,
    principal: CurrentPrincipal,
    service: TwoFAService,
    ctx: ClientCtx,
) -> SuccessResponse[BackupCodesResponse]:
    """Replace backup codes. Needs a fresh enable_2fa OTP."""
    codes = await service.regenerate_backup_codes(principal.user_id, body.otp, ctx)
    return SuccessResponse(data=BackupCodesResponse(backup_codes=codes))


@router.post("/phone/send", response_model=SuccessResponse[SendOTPResponse])
async def send_phone_verification(
    body: PhoneSendRequest,
    principal: CurrentPrincipal,
    service: TwoFAService,
    ctx: ClientCtx,
) -> SuccessResponse[SendOTPResponse]:
    phone = _resolve_phone(principal, body.phone_number)
    issued = await service.send_otp(
        principal.user_id, phone, OTPPurpose.PHONE_VERIFICATION, ctx
    )
    return SuccessResponse(
        data=SendOTPResponse(
            message="Verification code sent",
            destination_masked=issued.destination_masked,
            expires_at=issued.expires_at,
        )
    )


@router.post("/phone/verify", response_model=SuccessResponse[OkResponse])
async def verify_phone(
    body: PhoneVerifyRequest,
    principal: CurrentPrincipal,
    service: TwoFAService,
    ctx: ClientCtx,
) -> SuccessResponse[OkResponse]:
    await service.verify_phone(principal.user_id, body.otp, ctx)
    return SuccessResponse(data=OkResponse())


@router.post("/totp/verify", response_model=SuccessResponse[OkResponse])
async def verify_totp(
    body: TOTPVerifyRequest,
    principal: CurrentPrincipal,
    service: TwoFAService,
    ctx: ClientCtx,
) -> SuccessResponse[OkResponse]:
    await service.verify_totp(principal.user_id, body.code, ctx)
    return SuccessResponse(data=OkResponse())


@router.get("/devices", response_model=SuccessResponse[TrustedDevicesResponse])
async def list_devices(
    request: Request,
    principal: CurrentPrincipal,
    service: TwoFAService,
) -> SuccessResponse[TrustedDevicesResponse]:
    """List the caller's trusted devices, flagging the one holding the current cookie."""
    current_token = request.cookies.get(settings.TRUSTED_DEVICE_COOKIE_NAME)
    devices = await service.list_trusted_devices(principal.user_id, current_token)
    return SuccessResponse(
        data=TrustedDevicesResponse(
            devices=[
                TrustedDeviceResponse(
                    id=device.id,
                    name=device.name,
                    trusted_at=device.trusted_at,
                    last_used_at=device.last_used_at,
                    ip=device.ip_address,
                    is_current=device.is_current,
                )
                for device in devices
            ]
        )
    )


@router.delete("/devices/{device_id}", response_model=SuccessResponse[OkResponse])
async def revoke_device(
    device_id: str,
    principal: CurrentPrincipal,
    service: TwoFAService,
    ctx: ClientCtx,
) -> SuccessResponse[OkResponse]:
    try:
        parsed_id = UUID(device_id)
    except ValueError:
        raise BadRequestError("invalid device id", code="INVALID_DEVICE_ID") from None
    await service.revoke_trusted_device(principal.user_id, parsed_id, ctx)
    return SuccessResponse(data=OkResponse())


@router.post(
    "/login/verify",
    response_model=SuccessResponse[LoginVerifyResponse],
    status_code=status.HTTP_200_OK,
)
async def verify_login(
    body: LoginVerifyRequest,
    response: Response,
    service: TwoFAService,
    ctx: ClientCtx,
) -> SuccessResponse[LoginVerifyResponse]:
    """Complete a pending login. The session token, not a bearer credential, binds the user."""
    result = await service.complete_login(
        body.session_token,
        ctx,
        otp=body.otp or None,
        totp_code=body.totp_code or None,
        backup_code=body.backup_code or None,
        trust_device=body.trust_device,
        device_name=body.device_name,
    )
    device_token = result.device_token.token if result.device_token else None
    if device_token:
        _set_device_cookie(response, device_token)
    return SuccessResponse(
        data=LoginVerifyResponse(
            access_token=result.access_token,
            verified_by=result.verified_by,
            device_token=device_token,
        )
    )
