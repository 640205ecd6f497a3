"""Redis client module with connection pooling."""

import redis.asyncio as redis
from redis.exceptions import RedisError

from twofa.core.config import settings
from twofa.core.logging import get_logger

logger = get_logger(__name__)

# Global Redis client instance
_redis_client: redis.Redis | None = None


def get_redis_client() -> redis.Redis | None:
    """Get Redis client instance. Returns None if Redis is disabled or not configured."""
    global _redis_client

    if not settings.REDIS_ENABLED:
        return None

    if _redis_client is None:
        if not settings.REDIS_URL:
            logger.warning("Redis enabled but REDIS_URL not set. Redis features will be disabled.")
            return None

        _redis_client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=1,
            socket_timeout=1,
            retry_on_timeout=True,
            health_check_interval=30,
        )

    return _redis_client


async def init_redis() -> None:
    """Ping Redis on startup so misconfiguration shows up in the logs early."""
    client = get_redis_client()
    if client is None:
        return
    try:
        await client.ping()
        logger.info("Redis connection established")
    except RedisError as e:
        logger.warning(f"Redis connection failed (non-fatal): {e}")


async def close_redis() -> None:
    global _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
