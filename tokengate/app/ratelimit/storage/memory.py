"""In-memory bucket store.

Suitable for single-instance deployments and tests. Data is lost when the
process restarts, and running several workers gives each its own buckets.
"""

import asyncio
from collections import deque
from datetime import datetime
from typing import Deque, Dict, List, Optional, Tuple

from tokengate.app.core.config import settings
from tokengate.app.ratelimit.bucket import BucketState
from tokengate.app.ratelimit.storage.base import BucketStore, StoredBucket, ViolationRecord


class InMemoryBucketStore(BucketStore):
    """Dict-backed store guarded by an asyncio lock.

    Like the Redis list, each subject keeps at most ``violation_history``
    violation records; the oldest are dropped first.
    """

    name = "memory"

    def __init__(self, violation_history: Optional[int] = None) -> None:
        if violation_history is None:
            violation_history = settings.rate_limit_violation_history
        if violation_history < 1:
            raise ValueError("violation_history must be at least 1")
        self._violation_history = violation_history
        self._buckets: Dict[Tuple[str, str], StoredBucket] = {}
        self._violations: Dict[str, Deque[ViolationRecord]] = {}
        self._lock = asyncio.Lock()

    async def load(self, subject: str, resource: str) -> Optional[StoredBucket]:
        async with self._lock:
            return self._buckets.get((subject, resource))

    async def compare_and_set(
        self,
        subject: str,
        resource: str,
        expected_version: Optional[int],
        state: BucketState,
    ) -> bool:
        key = (subject, resource)
        async with self._lock:
            current = self._buckets.get(key)
            current_version = current.version if current is not None else None
            if current_version != expected_version:
                return False
            new_version = 1 if expected_version is None else expected_version + 1
            self._buckets[key] = StoredBucket(
                state=BucketState(state.tokens_remaining, state.last_refill_at),
                version=new_version,
            )
            return True

    async def delete(self, subject: str, resource: Optional[str] = None) -> int:
        async with self._lock:
            if resource is not None:
                return 1 if self._buckets.pop((subject, resource), None) else 0
            keys = [key for key in self._buckets if key[0] == subject]
            for key in keys:
                del self._buckets[key]
            return len(keys)

    async def append_violation(self, record: ViolationRecord) -> None:
        async with self._lock:
            history = self._violations.get(record.subject)
            if history is None:
                history = deque(maxlen=self._violation_history)
                self._violations[record.subject] = history
            history.append(record)

    async def list_violations(self, subject: str, limit: int) -> List[ViolationRecord]:
        async with self._lock:
            records = self._violations.get(subject, [])
            ordered = sorted(records, key=lambda r: r.violated_at, reverse=True)
            return ordered[:limit]

    async def purge_violations(self, older_than: datetime) -> int:
        async with self._lock:
            removed = 0
            for subject, records in self._violations.items():
                kept = [r for r in records if r.violated_at >= older_than]
                removed += len(records) - len(kept)
                self._violations[subject] = deque(kept, maxlen=self._violation_history)
            return removed
