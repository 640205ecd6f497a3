"""Base SMS provider interface."""

from abc import ABC, abstractmethod


class SMSDeliveryError(Exception):
    """The provider did not accept the message."""


class SMSProvider(ABC):
    """Base interface for SMS providers."""

    @abstractmethod
    async def send(self, to: str, body: str) -> str:
        """
        Send an SMS.

        Args:
            to: Recipient phone number in E.164 form
            body: Message text (may contain a one-time code; never log it)

        Returns:
            Provider message ID (e.g., "console:<uuid>", Twilio message SID)

        Raises:
            SMSDeliveryError: if the provider rejected or failed the send
        """
        pass
