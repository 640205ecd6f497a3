"""Tests for the fixed-window rate limiter and its backends."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import OperationalError

from twofa.security.rate_limit import (
    LOCK_REASON_RATE_EXCEEDED,
    DatabaseRateLimiter,
    RedisRateLimiter,
    WindowState,
    advance_window,
    create_rate_limiter,
)

T0 = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class TestAdvanceWindow:
    """The pure window transition."""

    def test_first_request_opens_window(self):
        allowed, state = advance_window(None, T0, max_requests=3, window_seconds=60)
        assert allowed is True
        assert state == WindowState(request_count=1, window_start=T0)

    def test_requests_within_limit_increment(self):
        state = WindowState(request_count=2, window_start=T0)
        allowed, new_state = advance_window(state, T0 + timedelta(seconds=5), 3, 60)
        assert allowed is True
        assert new_state.request_count == 3
        assert new_state.window_start == T0

    def test_exceeding_limit_installs_lockout(self):
        state = WindowState(request_count=3, window_start=T0)
        now = T0 + timedelta(seconds=10)
        allowed, new_state = advance_window(state, now, 3, 60)
        assert allowed is False
        assert new_state.locked_until == now + timedelta(seconds=60)
        assert new_state.lock_reason == LOCK_REASON_RATE_EXCEEDED

    def test_active_lockout_denies_without_change(self):
        state = WindowState(
            request_count=3,
            window_start=T0,
            locked_until=T0 + timedelta(seconds=70),
            lock_reason=LOCK_REASON_RATE_EXCEEDED,
        )
        allowed, new_state = advance_window(state, T0 + timedelta(seconds=65), 3, 60)
        assert allowed is False
        assert new_state is None

    def test_elapsed_window_resets_and_clears_lockout(self):
        state = WindowState(
            request_count=3,
            window_start=T0,
            locked_until=T0 + timedelta(seconds=70),
            lock_reason=LOCK_REASON_RATE_EXCEEDED,
        )
        now = T0 + timedelta(seconds=70)
        allowed, new_state = advance_window(state, now, 3, 60)
        assert allowed is True
        assert new_state == WindowState(request_count=1, window_start=now)


class TestDatabaseRateLimiter:
    async def test_allows_max_then_locks(self, rate_limiter, clock):
        results = [await rate_limiter.check("+15550000001", "phone", 5, 3600) for _ in range(6)]

        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert results[-1].locked_until == clock() + timedelta(seconds=3600)

        state = await rate_limiter.inspect("+15550000001", "phone")
        assert state.request_count == 5
        assert state.lock_reason == LOCK_REASON_RATE_EXCEEDED

    async def test_lockout_lifts_after_window(self, rate_limiter, clock):
        for _ in range(3):
            await rate_limiter.check("u1", "user", 2, 60)

        clock.advance(seconds=30)
        assert (await rate_limiter.check("u1", "user", 2, 60)).allowed is False

        clock.advance(seconds=30)
        assert (await rate_limiter.check("u1", "user", 2, 60)).allowed is True

    async def test_identifiers_and_kinds_are_isolated(self, rate_limiter):
        await rate_limiter.check("shared", "phone", 1, 60)
        assert (await rate_limiter.check("shared", "phone", 1, 60)).allowed is False
        assert (await rate_limiter.check("shared", "user", 1, 60)).allowed is True
        assert (await rate_limiter.check("other", "phone", 1, 60)).allowed is True

    async def test_concurrent_checks_allow_exactly_max(self, rate_limiter):
        results = await asyncio.gather(
            *(rate_limiter.check("+15550000002", "phone", 5, 3600) for _ in range(8))
        )
        assert sum(r.allowed for r in results) == 5
        assert not any(r.degraded for r in results)

    async def test_reset_clears_counter(self, rate_limiter):
        await rate_limiter.check("u2", "user", 1, 60)
        await rate_limiter.check("u2", "user", 1, 60)

        assert await rate_limiter.reset("u2", "user") is True
        assert await rate_limiter.inspect("u2", "user") is None
        assert (await rate_limiter.check("u2", "user", 1, 60)).allowed is True
        assert await rate_limiter.reset("missing", "user") is False

    async def test_storage_failure_fails_open(self, store, clock):
        limiter = DatabaseRateLimiter(store, clock=clock)
        with patch.object(
            limiter,
            "_check",
            AsyncMock(side_effect=OperationalError("UPDATE", {}, Exception("db down"))),
        ), patch("twofa.security.rate_limit.log_security_event") as log_event:
            result = await limiter.check("+15550000003", "phone", 5, 3600)

        assert result.allowed is True
        assert result.degraded is True
        assert log_event.call_args.kwargs["outcome"] == "degraded"

    async def test_exhausted_retries_fail_open(self, store, clock):
        limiter = DatabaseRateLimiter(store, clock=clock, max_retries=1)
        await limiter.check("busy", "user", 5, 60)

        class _NoRowsUpdated:
            rowcount = 0

        real_factory = store.session_factory

        def factory():
            session = real_factory()
            original_execute = session.execute

            async def execute(statement, *args, **kwargs):
                if getattr(statement, "is_update", False):
                    return _NoRowsUpdated()
                return await original_execute(statement, *args, **kwargs)

            session.execute = execute
            return session

        store.session_factory = factory
        try:
            result = await limiter.check("busy", "user", 5, 60)
        finally:
            store.session_factory = real_factory

        assert result.allowed is True
        assert result.degraded is True


class TestRedisRateLimiter:
    """Redis backend; the Lua script itself runs server-side, so the client is mocked."""

    def _client(self, reply=None, side_effect=None) -> MagicMock:
        client = MagicMock()
        client.eval = AsyncMock(return_value=reply, side_effect=side_effect)
        client.hgetall = AsyncMock(return_value={})
        client.delete = AsyncMock(return_value=1)
        return client

    async def test_allowed_reply(self, clock):
        client = self._client(reply=[1, "0"])
        limiter = RedisRateLimiter(client=client, clock=clock)

        result = await limiter.check("+15550000001", "phone", 5, 3600)

        assert result.allowed is True
        assert result.locked_until is None
        args = client.eval.call_args.args
        assert args[1] == 1
        assert args[2] == "rl:2fa:phone:+15550000001"
        assert float(args[3]) == clock().timestamp()
        assert args[4:] == (5, 3600)

    async def test_denied_reply_carries_lockout(self, clock):
        until = clock() + timedelta(seconds=3600)
        limiter = RedisRateLimiter(
            client=self._client(reply=[0, str(until.timestamp())]), clock=clock
        )

        result = await limiter.check("+15550000001", "phone", 5, 3600)

        assert result.allowed is False
        assert result.locked_until == until

    async def test_redis_error_fails_open(self, clock):
        limiter = RedisRateLimiter(
            client=self._client(side_effect=RedisConnectionError("refused")), clock=clock
        )
        result = await limiter.check("+15550000001", "phone", 5, 3600)
        assert result.allowed is True
        assert result.degraded is True

    async def test_missing_client_fails_open(self, clock):
        with patch("twofa.security.rate_limit.get_redis_client", return_value=None):
            result = await RedisRateLimiter(clock=clock).check("u", "user", 5, 60)
        assert result.allowed is True
        assert result.degraded is True

    async def test_inspect_reads_hash(self, clock):
        client = self._client()
        client.hgetall.return_value = {
            "count": "5",
            "window_start": str(clock().timestamp()),
            "locked_until": str((clock() + timedelta(seconds=60)).timestamp()),
            "lock_reason": "rate_exceeded",
            "max_requests": "5",
            "window": "60",
        }
        state = await RedisRateLimiter(client=client, clock=clock).inspect("u", "user")

        assert state.request_count == 5
        assert state.window_start == clock()
        assert state.locked_until == clock() + timedelta(seconds=60)
        assert state.window_seconds == 60
        assert state.lock_reason == "rate_exceeded"

    async def test_reset_deletes_key(self, clock):
        client = self._client()
        assert await RedisRateLimiter(client=client, clock=clock).reset("u", "user") is True
        client.delete.assert_awaited_once_with("rl:2fa:user:u")


async def test_backend_selection(store):
    with patch("twofa.security.rate_limit.settings") as mock_settings:
        mock_settings.RATE_LIMIT_BACKEND = "redis"
        assert isinstance(create_rate_limiter(store), RedisRateLimiter)
        mock_settings.RATE_LIMIT_BACKEND = "database"
        mock_settings.RL_CAS_MAX_RETRIES = 16
        mock_settings.STORE_CALL_TIMEOUT_SECONDS = 2.0
        assert isinstance(create_rate_limiter(store), DatabaseRateLimiter)
