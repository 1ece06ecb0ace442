"""Async database session management for SQLAlchemy 2.0+.

This module provides async database operations using PostgreSQL with asyncpg
in production and SQLite with aiosqlite for local runs and tests.
"""

from functools import lru_cache
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tokengate.app.core.config import settings
from tokengate.app.core.logging import get_logger

logger = get_logger(__name__)

# Global session maker instance
_AsyncSessionLocal: Optional[async_sessionmaker[AsyncSession]] = None


@lru_cache(maxsize=1)
def get_async_engine(database_url: str | None = None) -> AsyncEngine:
    """Get or create the async database engine (thread-safe singleton).

    Args:
        database_url: Optional database URL. Uses settings if not provided.

    Returns:
        AsyncEngine instance
    """
    url = database_url or settings.database_url

    if "sqlite" in url.lower():
        # SQLite manages its own pooling; pool sizing arguments do not apply
        engine = create_async_engine(url, echo=False, future=True)
        logger.info("Created SQLite async engine")
    else:
        # Bounded per-command timeout so a stuck database cannot hang a check
        connect_args = {"command_timeout": settings.db_command_timeout}
        engine = create_async_engine(
            url,
            echo=False,
            future=True,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=settings.db_pool_recycle,
            pool_pre_ping=settings.db_pool_pre_ping,
            connect_args=connect_args,
        )
        logger.info(
            f"Created PostgreSQL async engine (pool_size={settings.db_pool_size}, "
            f"max_overflow={settings.db_max_overflow}, "
            f"pool_timeout={settings.db_pool_timeout}s)"
        )
    return engine


def get_async_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get the async session maker bound to the global engine."""
    global _AsyncSessionLocal
    if _AsyncSessionLocal is None:
        _AsyncSessionLocal = async_sessionmaker(
            bind=get_async_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
            autocommit=False,
        )
    return _AsyncSessionLocal


async def close_async_engine() -> None:
    """Close the async engine.

    Call this on application shutdown to release database connections.
    """
    global _AsyncSessionLocal

    engine = get_async_engine()
    try:
        await engine.dispose()
        logger.debug("Async engine disposed successfully")
    except RuntimeError:
        # Event loop mismatch - connection already closed or different loop
        logger.debug("Engine dispose encountered RuntimeError (event loop mismatch)")

    # Clear cache to allow recreation on next startup
    get_async_engine.cache_clear()
    _AsyncSessionLocal = None
