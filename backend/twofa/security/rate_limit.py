"""Fixed-window rate limiting with lockout.

Two interchangeable backends share one contract:

* DatabaseRateLimiter keeps the counter in the `rate_limits` table and applies
  each decision with an optimistic compare-and-swap on the row's `version`.
* RedisRateLimiter keeps the counter in a Redis hash and applies each decision
  atomically inside a Lua script.

Both fail open on storage errors: the request is allowed, the result is marked
degraded, and a security event is logged.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone

from redis.exceptions import RedisError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from twofa.core.clock import Clock, ensure_utc, utcnow
from twofa.core.config import settings
from twofa.core.logging import get_logger
from twofa.core.redis_client import get_redis_client
from twofa.core.security_logging import log_security_event
from twofa.models import RateLimitCounter
from twofa.services.credential_store import CredentialStore, StoreError

logger = get_logger(__name__)

LOCK_REASON_RATE_EXCEEDED = "rate_exceeded"


class RateLimitContentionError(Exception):
    """Every compare-and-swap attempt lost to a concurrent writer."""


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    degraded: bool = False  # True when the backend failed and the check failed open
    locked_until: datetime | None = None


@dataclass(frozen=True)
class WindowState:
    """Counter state for one (identifier, kind)."""

    request_count: int
    window_start: datetime
    locked_until: datetime | None = None
    lock_reason: str | None = None


@dataclass
class RateLimitState:
    """Counter snapshot for the administrative surface."""

    identifier: str
    kind: str
    request_count: int
    window_start: datetime | None
    window_seconds: int | None
    max_requests: int | None
    locked_until: datetime | None
    lock_reason: str | None


def advance_window(
    state: WindowState | None,
    now: datetime,
    max_requests: int,
    window_seconds: int,
) -> tuple[bool, WindowState | None]:
    """
    Apply one request to a fixed window.

    Returns (allowed, new_state). new_state is None when nothing changes, which
    only happens while a lockout is in force.
    """
    if state is None:
        return True, WindowState(request_count=1, window_start=now)

    if state.locked_until is not None and state.locked_until > now:
        return False, None

    if now - state.window_start >= timedelta(seconds=window_seconds):
        return True, WindowState(request_count=1, window_start=now)

    if state.request_count < max_requests:
        return True, replace(state, request_count=state.request_count + 1)

    return False, replace(
        state,
        locked_until=now + timedelta(seconds=window_seconds),
        lock_reason=LOCK_REASON_RATE_EXCEEDED,
    )


class RateLimiter(ABC):
    """Contract shared by every rate-limit backend."""

    @abstractmethod
    async def check(
        self, identifier: str, kind: str, max_requests: int, window_seconds: int
    ) -> RateLimitResult:
        """Count one request against (identifier, kind) and decide whether it may proceed."""

    @abstractmethod
    async def inspect(self, identifier: str, kind: str) -> RateLimitState | None:
        """Return the current counter, or None if the identifier has no counter."""

    @abstractmethod
    async def reset(self, identifier: str, kind: str) -> bool:
        """Drop the counter and any lockout. Returns True if one existed."""

    def _fail_open(self, identifier: str, kind: str, error: Exception) -> RateLimitResult:
        logger.warning(
            "Rate limit check failed, failing open",
            extra={"kind": kind, "error_type": type(error).__name__},
        )
        log_security_event(
            None,
            event_type="rate_limit_check",
            outcome="degraded",
            reason_code="RATE_LIMIT_BACKEND_UNAVAILABLE",
            kind=kind,
        )
        return RateLimitResult(allowed=True, degraded=True)


class DatabaseRateLimiter(RateLimiter):
    """Counter rows in the credential store, updated by compare-and-swap on `version`."""

    def __init__(
        self,
        store: CredentialStore,
        clock: Clock | None = None,
        max_retries: int | None = None,
        call_timeout: float | None = None,
    ):
        self.store = store
        self.clock = clock or store.clock
        self.max_retries = max_retries or settings.RL_CAS_MAX_RETRIES
        self.call_timeout = call_timeout or settings.STORE_CALL_TIMEOUT_SECONDS

    async def check(
        self, identifier: str, kind: str, max_requests: int, window_seconds: int
    ) -> RateLimitResult:
        try:
            return await asyncio.wait_for(
                self._check(identifier, kind, max_requests, window_seconds),
                timeout=self.call_timeout,
            )
        except (SQLAlchemyError, RateLimitContentionError, asyncio.TimeoutError) as e:
            return self._fail_open(identifier, kind, e)

    async def _check(
        self, identifier: str, kind: str, max_requests: int, window_seconds: int
    ) -> RateLimitResult:
        factory = self.store.session_factory
        for _ in range(self.max_retries):
            now = self.clock()
            async with factory() as session:
                row = (
                    await session.execute(
                        select(RateLimitCounter).where(
                            RateLimitCounter.identifier == identifier,
                            RateLimitCounter.kind == kind,
                        )
                    )
                ).scalar_one_or_none()

            if row is None:
                try:
                    async with factory() as session:
                        async with session.begin():
                            session.add(
                                RateLimitCounter(
                                    identifier=identifier,
                                    kind=kind,
                                    request_count=1,
                                    window_start=now,
                                    window_duration=window_seconds,
                                    max_requests=max_requests,
                                    version=0,
                                )
                            )
                except IntegrityError:
                    # Another worker created the row first
                    continue
                return RateLimitResult(allowed=True)

            state = WindowState(
                request_count=row.request_count,
                window_start=ensure_utc(row.window_start),
                locked_until=ensure_utc(row.locked_until),
                lock_reason=row.lock_reason,
            )
            allowed, new_state = advance_window(state, now, max_requests, window_seconds)
            if new_state is None:
                return RateLimitResult(allowed=False, locked_until=state.locked_until)

            try:
                async with factory() as session:
                    async with session.begin():
                        result = await session.execute(
                            update(RateLimitCounter)
                            .where(
                                RateLimitCounter.id == row.id,
                                RateLimitCounter.version == row.version,
                            )
                            .values(
                                request_count=new_state.request_count,
                                window_start=new_state.window_start,
                                window_duration=window_seconds,
                                max_requests=max_requests,
                                locked_until=new_state.locked_until,
                                lock_reason=new_state.lock_reason,
                                version=row.version + 1,
                            )
                        )
            except OperationalError:
                # Lock contention; re-read and try again
                continue
            if result.rowcount == 1:
                return RateLimitResult(allowed=allowed, locked_until=new_state.locked_until)

        raise RateLimitContentionError(f"no compare-and-swap win after {self.max_retries} attempts")

    async def inspect(self, identifier: str, kind: str) -> RateLimitState | None:
        row = await self.store.get_rate_limit(identifier, kind)
        if row is None:
            return None
        return RateLimitState(
            identifier=row.identifier,
            kind=row.kind,
            request_count=row.request_count,
            window_start=ensure_utc(row.window_start),
            window_seconds=row.window_duration,
            max_requests=row.max_requests,
            locked_until=ensure_utc(row.locked_until),
            lock_reason=row.lock_reason,
        )

    async def reset(self, identifier: str, kind: str) -> bool:
        return await self.store.clear_rate_limit(identifier, kind)


# KEYS[1] = counter hash; ARGV = now (epoch seconds), max_requests, window_seconds
# Returns {allowed (0/1), locked_until (epoch seconds as string, "0" when unlocked)}
_FIXED_WINDOW_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local max_requests = tonumber(ARGV[2])
local window = tonumber(ARGV[3])

local locked_until = tonumber(redis.call('HGET', key, 'locked_until') or '0')
if locked_until > now then
    return {0, tostring(locked_until)}
end

local window_start = tonumber(redis.call('HGET', key, 'window_start') or '-1')
local count = tonumber(redis.call('HGET', key, 'count') or '0')

if window_start < 0 or now - window_start >= window then
    redis.call('HSET', key, 'count', 1, 'window_start', now, 'locked_until', 0,
               'max_requests', max_requests, 'window', window)
    redis.call('HDEL', key, 'lock_reason')
    redis.call('EXPIRE', key, window * 2)
    return {1, '0'}
end

if count < max_requests then
    redis.call('HINCRBY', key, 'count', 1)
    return {1, '0'}
end

local until_ts = now + window
redis.call('HSET', key, 'locked_until', until_ts, 'lock_reason', 'rate_exceeded')
redis.call('EXPIRE', key, window * 2)
return {0, tostring(until_ts)}
"""


def _from_epoch(value: str | float | None) -> datetime | None:
    if value is None:
        return None
    seconds = float(value)
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class RedisRateLimiter(RateLimiter):
    """Counter hashes in Redis; every decision runs as one Lua script."""

    key_prefix = "rl:2fa"

    def __init__(self, client=None, clock: Clock = utcnow):
        self._client = client
        self.clock = clock

    @property
    def client(self):
        return self._client if self._client is not None else get_redis_client()

    def _key(self, identifier: str, kind: str) -> str:
        return f"{self.key_prefix}:{kind}:{identifier}"

    async def check(
        self, identifier: str, kind: str, max_requests: int, window_seconds: int
    ) -> RateLimitResult:
        client = self.client
        if client is None:
            return self._fail_open(identifier, kind, StoreError("Redis unavailable"))

        now = self.clock()
        try:
            allowed, locked_until = await client.eval(
                _FIXED_WINDOW_LUA,
                1,
                self._key(identifier, kind),
                repr(now.timestamp()),
                max_requests,
                window_seconds,
            )
        except RedisError as e:
            return self._fail_open(identifier, kind, e)

        return RateLimitResult(allowed=bool(int(allowed)), locked_until=_from_epoch(locked_until))

    async def inspect(self, identifier: str, kind: str) -> RateLimitState | None:
        client = self.client
        if client is None:
            return None
        data = await client.hgetall(self._key(identifier, kind))
        if not data:
            return None
        return RateLimitState(
            identifier=identifier,
            kind=kind,
            request_count=int(data.get("count", 0)),
            window_start=_from_epoch(data.get("window_start")),
            window_seconds=int(data["window"]) if "window" in data else None,
            max_requests=int(data["max_requests"]) if "max_requests" in data else None,
            locked_until=_from_epoch(data.get("locked_until")),
            lock_reason=data.get("lock_reason"),
        )

    async def reset(self, identifier: str, kind: str) -> bool:
        client = self.client
        if client is None:
            return False
        return bool(await client.delete(self._key(identifier, kind)))


def create_rate_limiter(store: CredentialStore) -> RateLimiter:
    """Build the limiter selected by RATE_LIMIT_BACKEND."""
    if settings.RATE_LIMIT_BACKEND == "redis":
        return RedisRateLimiter(clock=store.clock)
    return DatabaseRateLimiter(store)
