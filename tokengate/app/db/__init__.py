"""Database package for tokengate.

This package provides:
- Database models (RateLimitBucket, RateLimitViolation)
- Asynchronous session management
- CRUD operations used by the database bucket store
"""

from tokengate.app.db.base import Base
from tokengate.app.db.models import RateLimitBucket, RateLimitViolation
from tokengate.app.db.async_session import (
    close_async_engine,
    get_async_engine,
    get_async_session_maker,
)

__all__ = [
    # Base
    "Base",
    # Models
    "RateLimitBucket",
    "RateLimitViolation",
    # Session (async)
    "close_async_engine",
    "get_async_engine",
    "get_async_session_maker",
]
