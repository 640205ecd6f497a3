"""SMS service factory."""

from twofa.core.config import settings
from twofa.core.logging import get_logger
from twofa.services.sms.base import SMSProvider
from twofa.services.sms.console import ConsoleSMSProvider
from twofa.services.sms.twilio import TwilioSMSProvider

logger = get_logger(__name__)

# Global SMS service instance
_sms_service: SMSProvider | None = None


def get_sms_service() -> SMSProvider:
    """
    Get the SMS service provider.

    Returns:
        SMSProvider instance
    """
    global _sms_service

    if _sms_service is not None:
        return _sms_service

    if settings.SMS_BACKEND == "twilio":
        if not (
            settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_FROM_NUMBER
        ):
            raise ValueError("TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_FROM_NUMBER must be set")
        _sms_service = TwilioSMSProvider(
            account_sid=settings.TWILIO_ACCOUNT_SID,
            auth_token=settings.TWILIO_AUTH_TOKEN,
            from_number=settings.TWILIO_FROM_NUMBER,
            api_base=settings.TWILIO_API_BASE,
            timeout=settings.SMS_SEND_TIMEOUT_SECONDS,
        )
        logger.info("SMS service initialized: Twilio")
    else:
        _sms_service = ConsoleSMSProvider()
        logger.info("SMS service initialized: Console")

    return _sms_service
