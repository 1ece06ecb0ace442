"""Bucket state persistence backends.

This package provides a small abstraction layer so the limiter can run
against a SQL database, a shared Redis, or process memory without changing
the rate limiting logic.
"""

from tokengate.app.ratelimit.storage.base import BucketStore, StoredBucket, ViolationRecord
from tokengate.app.ratelimit.storage.database import DatabaseBucketStore
from tokengate.app.ratelimit.storage.memory import InMemoryBucketStore
from tokengate.app.ratelimit.storage.redis_store import RedisBucketStore

__all__ = [
    "BucketStore",
    "StoredBucket",
    "ViolationRecord",
    "DatabaseBucketStore",
    "InMemoryBucketStore",
    "RedisBucketStore",
]
