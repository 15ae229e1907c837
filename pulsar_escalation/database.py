"""Database connection and session management.

The engine and session maker are created lazily so they bind to the event
loop that first uses them (asyncpg connections are loop-affine).
"""

from collections.abc import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from pulsar_escalation.config import settings

_engine: AsyncEngine | None = None
_async_session_maker: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get or create the database engine.

    When testing=True, uses NullPool so connections are never shared
    between the event loops of different tests.
    """
    global _engine
    if _engine is None:
        if settings.testing:
            _engine = create_async_engine(
                settings.database_url,
                poolclass=NullPool,
            )
        else:
            # The worker opens one session per alert, so the pool has to
            # cover escalation_max_concurrency plus API traffic.
            _engine = create_async_engine(
                settings.database_url,
                pool_size=max(5, settings.escalation_max_concurrency),
                max_overflow=10,
                pool_pre_ping=True,
            )
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get or create the session maker."""
    global _async_session_maker
    if _async_session_maker is None:
        _async_session_maker = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_maker


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for getting database sessions."""
    async with get_session_maker()() as session:
        yield session


async def check_database_connection() -> bool:
    """
    Check if the database is reachable.

    Returns:
        True if database is connected, False otherwise.
    """
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
            return True
    except Exception:
        return False


async def close_database() -> None:
    """Dispose the engine and forget the session maker."""
    global _engine, _async_session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_maker = None
