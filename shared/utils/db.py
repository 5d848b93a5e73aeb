"""Database session management with async SQLAlchemy."""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

# Global engine and session factory
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_db(
    database_url: str,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_timeout: float = 10.0,
    echo: bool = False,
) -> AsyncEngine:
    """Initialize the database engine and session factory.

    Args:
        database_url: Connection URL (postgresql+asyncpg://... or sqlite+aiosqlite://...)
        pool_size: Number of connections to keep in pool
        max_overflow: Maximum overflow connections beyond pool_size
        pool_timeout: Seconds to wait for a pooled connection
        echo: Whether to log SQL statements

    Returns:
        The created engine
    """
    global _engine, _session_factory

    engine_kwargs: dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
    if make_url(database_url).get_backend_name() != "sqlite":
        engine_kwargs.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
        )

    _engine = create_async_engine(database_url, **engine_kwargs)
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return _engine


def get_engine() -> AsyncEngine:
    """Get the database engine."""
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get a database session as an async context manager.

    Commits on clean exit and rolls back on error.

    Usage:
        async with get_db_session() as session:
            result = await session.execute(query)
    """
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def check_db(session: AsyncSession) -> bool:
    """Return True if the database answers a trivial query."""
    await session.execute(text("SELECT 1"))
    return True


async def close_db() -> None:
    """Close the database engine and all connections."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
