"""SMS delivery providers."""

from twofa.services.sms.base import SMSDeliveryError, SMSProvider
from twofa.services.sms.console import ConsoleSMSProvider
from twofa.services.sms.service import get_sms_service
from twofa.services.sms.twilio import TwilioSMSProvider

__all__ = [
    "SMSDeliveryError",
    "SMSProvider",
    "ConsoleSMSProvider",
    "TwilioSMSProvider",
    "get_sms_service",
]
