"""Database engine configuration."""

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from twofa.core.config import settings

_engine: AsyncEngine | None = None


def create_db_engine(url: str | None = None) -> AsyncEngine:
    """Create SQLAlchemy async engine."""
    url = url or settings.DATABASE_URL
    if url.startswith("sqlite"):
        # SQLite ignores pool sizing; wait on locks instead of failing immediately
        return create_async_engine(url, connect_args={"timeout": 15}, echo=False)
    return create_async_engine(
        url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        echo=False,  # Set to True for SQL query logging
    )


def get_engine() -> AsyncEngine:
    """Get the process-wide engine, creating it on first use."""
    global _engine

    if _engine is None:
        _engine = create_db_engine()
    return _engine


async def dispose_engine() -> None:
    global _engine

    if _engine is not None:
        await _engine.dispose()
        _engine = None
