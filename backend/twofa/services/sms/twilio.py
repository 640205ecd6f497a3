"""Twilio SMS provider over the REST API."""

import httpx

from twofa.core.logging import get_logger
from twofa.services.sms.base import SMSDeliveryError, SMSProvider

logger = get_logger(__name__)


class TwilioSMSProvider(SMSProvider):
    """
    Twilio SMS implementation.

    Posts to the Messages resource with HTTP basic auth. `transport` lets tests
    substitute an httpx.MockTransport.
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        api_base: str = "https://api.twilio.com",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    @property
    def messages_url(self) -> str:
        return f"{self.api_base}/2010-04-01/Accounts/{self.account_sid}/Messages.json"

    async def send(self, to: str, body: str) -> str:
        async with httpx.AsyncClient(
            auth=(self.account_sid, self.auth_token),
            timeout=self.timeout,
            transport=self.transport,
        ) as client:
            try:
                response = await client.post(
                    self.messages_url,
                    data={"To": to, "From": self.from_number, "Body": body},
                )
            except httpx.HTTPError as e:
                logger.error(f"Twilio request failed: {type(e).__name__}")
                raise SMSDeliveryError("Twilio request failed") from e

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            logger.error(
                "Twilio API error",
                extra={
                    "status_code": response.status_code,
                    "twilio_code": payload.get("code"),
                },
            )
            raise SMSDeliveryError(f"Twilio rejected message with status {response.status_code}")

        sid = response.json().get("sid", "")
        logger.info("SMS sent via Twilio", extra={"message_id": sid})
        return sid
