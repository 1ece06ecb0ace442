"""Bucket store interface.

The limiter depends on this abstraction (not the concrete implementation)
so the storage backend can be swapped (SQL database, Redis, in-memory)
without touching the rate limiting logic.

Every backend provides optimistic concurrency: ``compare_and_set`` only
writes when the stored version still equals the version that was read.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from tokengate.app.ratelimit.bucket import BucketState, utcnow


@dataclass(frozen=True)
class StoredBucket:
    """Persisted bucket state plus its optimistic-concurrency version."""
    state: BucketState
    version: int


@dataclass(frozen=True)
class ViolationRecord:
    """A denied request, kept for audit and monitoring."""
    subject: str
    resource: str
    tokens_requested: float
    tokens_available: float
    violated_at: datetime = field(default_factory=utcnow)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "subject": self.subject,
            "resource": self.resource,
            "tokens_requested": self.tokens_requested,
            "tokens_available": self.tokens_available,
            "violated_at": self.violated_at.isoformat(),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }


class BucketStore(ABC):
    """Abstract base class for bucket state persistence."""

    name: str = "abstract"

    @abstractmethod
    async def load(self, subject: str, resource: str) -> Optional[StoredBucket]:
        """Load the bucket for (subject, resource).

        Returns:
            StoredBucket, or None if no bucket has been written yet.
        """
        pass

    @abstractmethod
    async def compare_and_set(
        self,
        subject: str,
        resource: str,
        expected_version: Optional[int],
        state: BucketState,
    ) -> bool:
        """Write ``state`` if the stored version equals ``expected_version``.

        ``expected_version=None`` means the bucket must not exist yet.

        Returns:
            True if written, False on a concurrent-modification conflict.
        """
        pass

    @abstractmethod
    async def delete(self, subject: str, resource: Optional[str] = None) -> int:
        """Delete one bucket, or every bucket of ``subject`` if resource is None.

        Returns:
            Number of buckets removed.
        """
        pass

    @abstractmethod
    async def append_violation(self, record: ViolationRecord) -> None:
        """Append a violation record."""
        pass

    @abstractmethod
    async def list_violations(self, subject: str, limit: int) -> List[ViolationRecord]:
        """Return up to ``limit`` violations for ``subject``, newest first."""
        pass

    @abstractmethod
    async def purge_violations(self, older_than: datetime) -> int:
        """Delete violations recorded before ``older_than``.

        Returns:
            Number of records removed.
        """
        pass

    async def ping(self) -> bool:
        """Check connectivity. Backends without a remote side are always up."""
        return True

    async def close(self) -> None:
        """Release backend resources."""
        pass
