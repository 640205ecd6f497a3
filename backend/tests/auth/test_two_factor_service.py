"""Tests for the 2FA orchestration service."""

import uuid
from unittest.mock import AsyncMock, patch

import pytest

from twofa.core.app_exceptions import (
    BadRequestError,
    ForbiddenError,
    InternalError,
    NotFoundError,
)
from twofa.models import AuditEvent, EventStatus, IdentifierKind, OTPPurpose, TwoFAMethod
from twofa.services.credential_store import StoreError
from tests.helpers.seed import audit_rows, enable_2fa


def wrong_code(right: str) -> str:
    return "000000" if right != "000000" else "111111"


class TestEnable:
    async def test_backup_code_failure_leaves_2fa_off(self, service, sms, ctx, user_id):
        failing = AsyncMock(side_effect=StoreError("backup codes unavailable"))
        with patch.object(service.codes, "issue_backup_codes", failing):
            with pytest.raises(InternalError):
                await enable_2fa(service, user_id, ctx, method=TwoFAMethod.BOTH)

        status = await service.get_status(user_id)
        assert status.enabled is False
        assert await service.store.get_totp_secret(user_id) is None
        assert sms.sent == []

        (record,) = await audit_rows(service.store, user_id)
        assert record.event_status == EventStatus.FAILURE.value
        assert record.details["reason"] == "backup_codes_failed"

        result = await enable_2fa(service, user_id, ctx)
        assert len(result.backup_codes) == 10

    async def test_enable_sms(self, service, sms, ctx, user_id, phone):
        result = await enable_2fa(service, user_id, ctx)

        assert result.method == "sms"
        assert result.requires_otp is True
        assert result.otp_destination == "+123456****"
        assert result.totp_secret is None
        assert len(result.backup_codes) == 10
        assert sms.sent[-1].to == phone

        status = await service.get_status(user_id)
        assert status.enabled is True
        assert status.method == "sms"
        assert status.backup_codes_count == 10
        assert status.phone_verified is False

    async def test_enable_totp_sends_nothing(self, service, sms, ctx, user_id):
        result = await enable_2fa(service, user_id, ctx, method=TwoFAMethod.TOTP, phone_number=None)

        assert result.requires_otp is False
        assert result.totp_secret
        assert result.totp_qr_url.startswith("otpauth://totp/")
        assert sms.sent == []

    async def test_enable_both(self, service, sms, ctx, user_id):
        result = await enable_2fa(service, user_id, ctx, method=TwoFAMethod.BOTH)
        assert result.totp_secret
        assert result.requires_otp is True
        assert len(sms.sent) == 1

    async def test_enable_twice(self, service, ctx, user_id):
        await enable_2fa(service, user_id, ctx)
        with pytest.raises(BadRequestError) as exc:
            await enable_2fa(service, user_id, ctx)
        assert exc.value.code == "TWOFA_ALREADY_ENABLED"

    async def test_sms_requires_phone(self, service, ctx, user_id):
        with pytest.raises(BadRequestError) as exc:
            await enable_2fa(service, user_id, ctx, phone_number=None)
        assert exc.value.code == "PHONE_REQUIRED"
        assert (await service.get_status(user_id)).enabled is False

    async def test_delivery_failure_does_not_undo_enrolment(self, service, sms, ctx, user_id):
        sms.fail = True
        result = await enable_2fa(service, user_id, ctx)

        assert len(result.backup_codes) == 10
        assert (await service.get_status(user_id)).enabled is True
        (record,) = await audit_rows(service.store, user_id)
        assert record.details["otp_sent"] is False

    async def test_enable_otp_verifies_phone(self, service, sms, ctx, user_id):
        await enable_2fa(service, user_id, ctx)
        await service.verify_otp(user_id, sms.last_code, OTPPurpose.ENABLE_2FA, ctx)
        assert (await service.get_status(user_id)).phone_verified is True

    async def test_enable_disable_enable_is_fresh(self, service, ctx, user_id):
        first = await enable_2fa(service, user_id, ctx, method=TwoFAMethod.TOTP, phone_number=None)
        await service.disable(user_id, ctx, backup_code=first.backup_codes[0])
        second = await enable_2fa(service, user_id, ctx, method=TwoFAMethod.TOTP, phone_number=None)

        assert second.totp_secret != first.totp_secret
        assert set(second.backup_codes).isdisjoint(first.backup_codes)
        with pytest.raises(BadRequestError):
            await service.verify_backup_code(user_id, first.backup_codes[1], ctx)


class TestDisable:
    async def test_disable_with_backup_code(self, service, ctx, user_id):
        result = await enable_2fa(service, user_id, ctx)
        code = result.backup_codes[0]

        await service.disable(user_id, ctx, otp="", backup_code=code)

        status = await service.get_status(user_id)
        assert status.enabled is False
        assert status.backup_codes_count == 0

        with pytest.raises(BadRequestError):
            await service.disable(user_id, ctx, otp="", backup_code=code)

    async def test_disable_with_otp(self, service, sms, ctx, user_id, phone):
        await enable_2fa(service, user_id, ctx)
        await service.send_otp(user_id, phone, OTPPurpose.DISABLE_2FA, ctx)

        await service.disable(user_id, ctx, otp=sms.last_code)

        assert (await service.get_status(user_id)).enabled is False
        row = await service.store.get_settings(user_id)
        assert row.totp_secret_encrypted is None

    async def test_enable_otp_cannot_disable(self, service, sms, ctx, user_id):
        await enable_2fa(service, user_id, ctx)
        with pytest.raises(BadRequestError) as exc:
            await service.disable(user_id, ctx, otp=sms.last_code)
        assert exc.value.code == "INVALID_VERIFICATION"
        assert (await service.get_status(user_id)).enabled is True

    async def test_bad_otp_falls_back_to_backup_code(self, service, sms, ctx, user_id, phone):
        result = await enable_2fa(service, user_id, ctx)
        await service.send_otp(user_id, phone, OTPPurpose.DISABLE_2FA, ctx)

        await service.disable(
            user_id, ctx, otp=wrong_code(sms.last_code), backup_code=result.backup_codes[0]
        )

        (record,) = [
            r
            for r in await audit_rows(service.store, user_id)
            if r.event_type == AuditEvent.TWOFA_DISABLED.value
        ]
        assert record.details["verified_by"] == "backup_code"

    async def test_proof_required(self, service, ctx, user_id):
        await enable_2fa(service, user_id, ctx)
        with pytest.raises(BadRequestError) as exc:
            await service.disable(user_id, ctx)
        assert exc.value.code == "PROOF_REQUIRED"

    async def test_invalid_proof(self, service, ctx, user_id):
        await enable_2fa(service, user_id, ctx)
        with pytest.raises(BadRequestError) as exc:
            await service.disable(user_id, ctx, backup_code="ZZZZ-ZZZZ")
        assert exc.value.message == "invalid OTP or backup code"
        assert (await service.get_status(user_id)).enabled is True

    async def test_not_enabled(self, service, ctx, user_id):
        with pytest.raises(BadRequestError) as exc:
            await service.disable(user_id, ctx, backup_code="ABCD-EFGH")
        assert exc.value.code == "TWOFA_NOT_ENABLED"

    async def test_disable_revokes_trusted_devices(self, service, ctx, user_id):
        result = await enable_2fa(service, user_id, ctx)
        first = await service.trust_device(user_id, ctx)
        second = await service.trust_device(user_id, ctx, device_name="Work laptop")

        await service.disable(user_id, ctx, backup_code=result.backup_codes[0])

        assert await service.validate_trusted_device(user_id, first.token) is False
        assert await service.validate_trusted_device(user_id, second.token) is False
        device = await service.store.get_trusted_device(first.device_id)
        assert device.revoked_reason == "2FA disabled"


class TestBackupCodeRegeneration:
    async def test_regenerate_with_enable_otp(self, service, sms, ctx, user_id):
        first = await enable_2fa(service, user_id, ctx)

        codes = await service.regenerate_backup_codes(user_id, sms.last_code, ctx)

        assert len(codes) == 10
        assert set(codes).isdisjoint(first.backup_codes)
        with pytest.raises(BadRequestError):
            await service.verify_backup_code(user_id, first.backup_codes[0], ctx)
        await service.verify_backup_code(user_id, codes[0], ctx)

    async def test_regenerate_rejects_wrong_otp(self, service, sms, ctx, user_id):
        first = await enable_2fa(service, user_id, ctx)

        with pytest.raises(BadRequestError):
            await service.regenerate_backup_codes(user_id, wrong_code(sms.last_code), ctx)

        await service.verify_backup_code(user_id, first.backup_codes[0], ctx)

    async def test_regenerate_requires_enabled(self, service, ctx, user_id):
        with pytest.raises(BadRequestError) as exc:
            await service.regenerate_backup_codes(user_id, "123456", ctx)
        assert exc.value.code == "TWOFA_NOT_ENABLED"


class TestPhoneVerification:
    async def test_send_and_verify(self, service, sms, ctx, user_id, phone):
        issued = await service.send_otp(user_id, phone, OTPPurpose.PHONE_VERIFICATION, ctx)
        assert issued.destination_masked == "+123456****"

        await service.verify_phone(user_id, sms.last_code, ctx)

        assert (await service.get_status(user_id)).phone_verified is True

    async def test_send_requires_phone(self, service, ctx, user_id):
        with pytest.raises(BadRequestError) as exc:
            await service.send_otp(user_id, None, OTPPurpose.PHONE_VERIFICATION, ctx)
        assert exc.value.code == "PHONE_REQUIRED"

    async def test_wrong_code(self, service, sms, ctx, user_id, phone):
        await service.send_otp(user_id, phone, OTPPurpose.PHONE_VERIFICATION, ctx)
        with pytest.raises(BadRequestError):
            await service.verify_phone(user_id, wrong_code(sms.last_code), ctx)
        assert (await service.get_status(user_id)).phone_verified is False


class TestTrustedDevices:
    async def test_trust_validate_revoke(self, service, ctx, user_id):
        issued = await service.trust_device(user_id, ctx)
        assert len(issued.token) >= 26

        assert await service.validate_trusted_device(user_id, issued.token) is True

        await service.revoke_trusted_device(user_id, issued.device_id, ctx)
        assert await service.validate_trusted_device(user_id, issued.token) is False

    async def test_token_is_bound_to_user(self, service, ctx, user_id):
        issued = await service.trust_device(user_id, ctx)
        assert await service.validate_trusted_device(uuid.uuid4(), issued.token) is False
        assert await service.validate_trusted_device(user_id, "A" * 52) is False
        assert await service.validate_trusted_device(user_id, None) is False

    async def test_expired_device_is_invalid(self, service, clock, ctx, user_id):
        issued = await service.trust_device(user_id, ctx)
        clock.advance(days=30, seconds=1)
        assert await service.validate_trusted_device(user_id, issued.token) is False

    async def test_only_digest_is_stored(self, service, ctx, user_id):
        issued = await service.trust_device(user_id, ctx)
        device = await service.store.get_trusted_device(issued.device_id)
        assert device.device_token_hash != issued.token
        assert len(device.device_token_hash) == 64

    async def test_device_name_defaults_from_user_agent(self, service, ctx, user_id):
        await service.trust_device(user_id, ctx)
        (device,) = await service.list_trusted_devices(user_id)
        assert device.name == "iPhone"
        assert device.ip_address == ctx.ip_address

    async def test_list_flags_current_device(self, service, ctx, user_id):
        current = await service.trust_device(user_id, ctx)
        await service.trust_device(user_id, ctx)

        devices = await service.list_trusted_devices(user_id, current.token)

        assert len(devices) == 2
        assert [d.id for d in devices if d.is_current] == [current.device_id]

    async def test_revoke_other_users_device(self, service, ctx, user_id):
        issued = await service.trust_device(user_id, ctx)
        with pytest.raises(ForbiddenError):
            await service.revoke_trusted_device(uuid.uuid4(), issued.device_id, ctx)
        assert await service.validate_trusted_device(user_id, issued.token) is True

    async def test_revoke_missing_or_revoked(self, service, ctx, user_id):
        with pytest.raises(NotFoundError):
            await service.revoke_trusted_device(user_id, uuid.uuid4(), ctx)

        issued = await service.trust_device(user_id, ctx)
        await service.revoke_trusted_device(user_id, issued.device_id, ctx)
        with pytest.raises(NotFoundError) as exc:
            await service.revoke_trusted_device(user_id, issued.device_id, ctx)
        assert exc.value.code == "DEVICE_NOT_FOUND"


class TestAudit:
    async def test_one_record_per_decision(self, service, sms, ctx, user_id, phone):
        async def count() -> int:
            return len(await audit_rows(service.store, user_id))

        result = await enable_2fa(service, user_id, ctx)
        assert await count() == 1

        await service.verify_otp(user_id, sms.last_code, OTPPurpose.ENABLE_2FA, ctx)
        assert await count() == 2

        issued = await service.trust_device(user_id, ctx)
        assert await count() == 3

        await service.revoke_trusted_device(user_id, issued.device_id, ctx)
        assert await count() == 4

        with pytest.raises(BadRequestError):
            await service.verify_backup_code(user_id, "ZZZZ-ZZZZ", ctx)
        assert await count() == 5

        await service.disable(user_id, ctx, backup_code=result.backup_codes[0])
        assert await count() == 6

        events = [r.event_type for r in await audit_rows(service.store, user_id)]
        assert sorted(events) == sorted(
            [
                AuditEvent.TWOFA_ENABLED.value,
                AuditEvent.OTP_VERIFIED.value,
                AuditEvent.DEVICE_TRUSTED.value,
                AuditEvent.DEVICE_REVOKED.value,
                AuditEvent.BACKUP_CODE_USED.value,
                AuditEvent.TWOFA_DISABLED.value,
            ]
        )

    async def test_records_carry_context(self, service, ctx, user_id):
        await service.trust_device(user_id, ctx)
        (record,) = await audit_rows(service.store, user_id)
        assert record.ip_address == ctx.ip_address
        assert record.user_agent == ctx.user_agent
        assert record.details["request_id"] == ctx.request_id
        assert record.related_entity_type == "trusted_device"

    async def test_noncritical_audit_failure_is_swallowed(self, service, ctx, user_id):
        with patch.object(
            service.store, "append_audit", AsyncMock(side_effect=StoreError("down"))
        ):
            issued = await service.trust_device(user_id, ctx)
        assert await service.validate_trusted_device(user_id, issued.token) is True

    async def test_critical_audit_failure_fails_the_call(self, service, ctx, user_id):
        issued = await service.trust_device(user_id, ctx)
        with patch.object(
            service.store, "append_audit", AsyncMock(side_effect=StoreError("down"))
        ):
            with pytest.raises(InternalError):
                await service.revoke_trusted_device(user_id, issued.device_id, ctx)


class TestAdministration:
    async def test_store_failure_is_internal_error(self, service, user_id):
        with patch.object(service.store, "get_settings", AsyncMock(side_effect=StoreError("db"))):
            with pytest.raises(InternalError) as exc:
                await service.get_status(user_id)
        assert exc.value.message == "internal error"

    async def test_clear_rate_limit(self, service, ctx):
        for _ in range(3):
            await service.rate_limiter.check("+15550000009", "phone", 2, 3600)

        actor = uuid.uuid4()
        assert await service.clear_rate_limit("+15550000009", IdentifierKind.PHONE, ctx, actor) is True
        assert await service.rate_limiter.inspect("+15550000009", "phone") is None

        (record,) = await audit_rows(service.store, actor)
        assert record.event_type == AuditEvent.RATE_LIMIT_CLEARED.value
        assert record.event_status == EventStatus.SUCCESS.value

    async def test_purge_user(self, service, ctx, user_id):
        await enable_2fa(service, user_id, ctx)
        await service.trust_device(user_id, ctx)

        await service.purge_user(user_id)

        status = await service.get_status(user_id)
        assert status.enabled is False
        assert status.backup_codes_count == 0
        assert status.trusted_devices_count == 0
        assert await service.list_audit(user_id) == []
