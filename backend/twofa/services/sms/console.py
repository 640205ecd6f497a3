"""Console SMS provider (fallback for local dev)."""

import uuid

from twofa.core.logging import get_logger
from twofa.services.sms.base import SMSProvider

logger = get_logger(__name__)


class ConsoleSMSProvider(SMSProvider):
    """Console SMS provider - prints messages instead of sending them."""

    async def send(self, to: str, body: str) -> str:
        """Print SMS to console. The body only goes to stdout, never to the JSON log."""
        message_id = f"console:{uuid.uuid4()}"
        logger.info("SMS (Console Provider)", extra={"message_id": message_id})
        print("\n" + "=" * 80)
        print("SMS (Console Provider)")
        print("=" * 80)
        print(f"To: {to}")
        print(f"Message ID: {message_id}")
        print("-" * 80)
        print(body)
        print("=" * 80 + "\n")
        return message_id
