"""Tests for SMS providers."""

from urllib.parse import parse_qs

import httpx
import pytest

from twofa.services.sms import service as sms_service
from twofa.services.sms.base import SMSDeliveryError
from twofa.services.sms.console import ConsoleSMSProvider
from twofa.services.sms.twilio import TwilioSMSProvider


def twilio(handler) -> TwilioSMSProvider:
    return TwilioSMSProvider(
        account_sid="AC123",
        auth_token="secret-token",
        from_number="+15550001111",
        transport=httpx.MockTransport(handler),
    )


class TestTwilioProvider:
    async def test_successful_send(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(201, json={"sid": "SM42", "status": "queued"})

        sid = await twilio(handler).send("+12345678901", "Your code is 123456")

        assert sid == "SM42"
        request = seen["request"]
        assert request.method == "POST"
        assert str(request.url) == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
        assert request.headers["Authorization"].startswith("Basic ")
        form = parse_qs(request.content.decode())
        assert form == {
            "To": ["+12345678901"],
            "From": ["+15550001111"],
            "Body": ["Your code is 123456"],
        }

    async def test_rejected_message(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})

        with pytest.raises(SMSDeliveryError):
            await twilio(handler).send("+1", "hello")

    async def test_non_json_error_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="Service Unavailable")

        with pytest.raises(SMSDeliveryError):
            await twilio(handler).send("+12345678901", "hello")

    async def test_transport_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(SMSDeliveryError):
            await twilio(handler).send("+12345678901", "hello")

    async def test_custom_api_base(self):
        provider = TwilioSMSProvider("AC1", "t", "+1555", api_base="http://localhost:8080/")
        assert provider.messages_url == "http://localhost:8080/2010-04-01/Accounts/AC1/Messages.json"


class TestConsoleProvider:
    async def test_prints_message(self, capsys):
        message_id = await ConsoleSMSProvider().send("+12345678901", "Your code is 123456")

        assert message_id.startswith("console:")
        out = capsys.readouterr().out
        assert "+12345678901" in out
        assert "Your code is 123456" in out


class TestFactory:
    @pytest.fixture(autouse=True)
    def reset_singleton(self, monkeypatch):
        monkeypatch.setattr(sms_service, "_sms_service", None)

    def test_console_backend(self, monkeypatch):
        monkeypatch.setattr(sms_service.settings, "SMS_BACKEND", "console")
        provider = sms_service.get_sms_service()
        assert isinstance(provider, ConsoleSMSProvider)
        assert sms_service.get_sms_service() is provider

    def test_twilio_backend(self, monkeypatch):
        monkeypatch.setattr(sms_service.settings, "SMS_BACKEND", "twilio")
        monkeypatch.setattr(sms_service.settings, "TWILIO_ACCOUNT_SID", "AC123")
        monkeypatch.setattr(sms_service.settings, "TWILIO_AUTH_TOKEN", "secret")
        monkeypatch.setattr(sms_service.settings, "TWILIO_FROM_NUMBER", "+15550001111")

        provider = sms_service.get_sms_service()

        assert isinstance(provider, TwilioSMSProvider)
        assert provider.from_number == "+15550001111"

    def test_twilio_backend_requires_credentials(self, monkeypatch):
        monkeypatch.setattr(sms_service.settings, "SMS_BACKEND", "twilio")
        monkeypatch.setattr(sms_service.settings, "TWILIO_ACCOUNT_SID", None)

        with pytest.raises(ValueError):
            sms_service.get_sms_service()
