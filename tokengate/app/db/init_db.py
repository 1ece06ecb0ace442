"""Database initialization utilities."""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from tokengate.app.core.logging import get_logger
from tokengate.app.db.async_session import get_async_engine
from tokengate.app.db.base import Base
from tokengate.app.db import models  # noqa: F401 - import to register models

logger = get_logger(__name__)


async def create_all_tables(engine: AsyncEngine | None = None) -> None:
    """Create all database tables."""
    if engine is None:
        engine = get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_database(engine: AsyncEngine | None = None) -> None:
    """Create any missing tables; existing tables and rows are left alone.

    Args:
        engine: Engine to use (defaults to the global engine).
    """
    await create_all_tables(engine)


async def verify_connection(engine: AsyncEngine | None = None) -> bool:
    """Verify database connection is working.

    Returns:
        True if connection successful, False otherwise.
    """
    try:
        if engine is None:
            engine = get_async_engine()
        async with engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            return result.scalar() == 1
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
