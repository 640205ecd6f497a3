"""Pytest configuration and shared fixtures."""

import os

# Settings are read at import time, so the environment must be in place first
os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./twofa_test.db")
os.environ.setdefault("JWT_SECRET", "test_jwt_secret_key_change_in_production_min_32_chars")
os.environ.setdefault("TOKEN_PEPPER", "test_pepper_change_in_production")
os.environ.setdefault("MFA_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("HASH_TIME_COST", "1")
os.environ.setdefault("HASH_MEMORY_COST", "8")
os.environ.setdefault("HASH_PARALLELISM", "1")
os.environ.setdefault("SMS_BACKEND", "console")
os.environ.setdefault("RATE_LIMIT_BACKEND", "database")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("COOKIE_SECURE", "false")

import uuid  # noqa: E402
from collections.abc import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

import twofa.models  # noqa: E402,F401
from twofa.core.dependencies import get_twofa_service  # noqa: E402
from twofa.db.base import Base  # noqa: E402
from twofa.db.engine import create_db_engine  # noqa: E402
from twofa.db.session import create_session_factory  # noqa: E402
from twofa.main import create_app  # noqa: E402
from twofa.security.rate_limit import DatabaseRateLimiter  # noqa: E402
from twofa.services.context import ClientContext  # noqa: E402
from twofa.services.credential_store import CredentialStore  # noqa: E402
from twofa.services.orchestrator import TwoFactorService  # noqa: E402
from tests.helpers.fakes import FrozenClock, RecordingSMSProvider  # noqa: E402
from tests.helpers.seed import auth_headers  # noqa: E402

# Configure pytest-asyncio
pytest_plugins = ("pytest_asyncio",)

TEST_PHONE = "+12345678901"


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def sms() -> RecordingSMSProvider:
    return RecordingSMSProvider()


@pytest.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh SQLite database file per test, schema created from metadata."""
    engine = create_db_engine(f"sqlite+aiosqlite:///{tmp_path / 'twofa.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield create_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def store(session_factory, clock) -> CredentialStore:
    return CredentialStore(session_factory, clock=clock)


@pytest.fixture
def rate_limiter(store, clock) -> DatabaseRateLimiter:
    return DatabaseRateLimiter(store, clock=clock)


@pytest.fixture
def service(store, rate_limiter, sms, clock) -> TwoFactorService:
    return TwoFactorService(store=store, rate_limiter=rate_limiter, sms=sms, clock=clock)


@pytest.fixture
def ctx() -> ClientContext:
    return ClientContext(
        ip_address="203.0.113.7",
        user_agent="Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X)",
        request_id="test-request",
    )


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def phone() -> str:
    return TEST_PHONE


@pytest.fixture
async def async_client(service) -> AsyncGenerator[AsyncClient, None]:
    """Async client against a fresh app wired to the per-test service."""
    test_app = create_app()
    test_app.dependency_overrides[get_twofa_service] = lambda: service

    transport = ASGITransport(app=test_app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        try:
            yield ac
        finally:
            test_app.dependency_overrides.clear()


@pytest.fixture
def rider_headers(user_id, phone) -> dict[str, str]:
    """Authorization header for a rider with a phone claim."""
    return auth_headers(user_id, role="RIDER", phone_number=phone)


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return auth_headers(uuid.uuid4(), role="ADMIN")
