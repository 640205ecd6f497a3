"""Expired 2FA data cleanup job."""

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from twofa.core.logging import get_logger
from twofa.services.credential_store import CredentialStore

logger = get_logger(__name__)


async def cleanup_expired_auth_data(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime | None = None,
) -> dict[str, int]:
    """
    Remove expired 2FA records.

    Deletes OTP challenges expired for over a day, pending logins expired for
    over an hour, and expired (unrevoked) trusted devices; resets rate-limit
    windows that have fully elapsed.

    Returns:
        Count of affected rows per table
    """
    # Longer deadline than request-path store calls
    store = CredentialStore(session_factory, call_timeout=300.0)
    counts = await store.cleanup_expired(now)
    logger.info("2FA cleanup completed", extra={"counts": counts})
    return counts
