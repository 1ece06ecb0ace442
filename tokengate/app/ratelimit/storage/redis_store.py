"""Redis bucket store for multi-instance deployments.

Key layout:
- ratelimit:bucket:{subject}:{resource} - hash (tokens, last_refill_at, version)
- ratelimit:buckets:{subject} - set of resources with a bucket (for reset)
- ratelimit:violations:{subject} - list of JSON records, newest first
- ratelimit:violation_subjects - set of subjects with violations (for purge)
"""

import json
from datetime import datetime, timezone
from typing import Any, List, Optional

import redis
import redis.asyncio as aioredis

from tokengate.app.core.config import settings
from tokengate.app.core.logging import get_logger
from tokengate.app.exceptions import StorageUnavailableError
from tokengate.app.ratelimit.bucket import BucketState
from tokengate.app.ratelimit.storage.base import BucketStore, StoredBucket, ViolationRecord
from tokengate.app.ratelimit.storage.redis_lua import (
    COMPARE_AND_SET_SCRIPT,
    PURGE_VIOLATIONS_SCRIPT,
)

logger = get_logger(__name__)

REDIS_EXCEPTIONS = (
    redis.ConnectionError,
    redis.TimeoutError,
    redis.RedisError,
    OSError,
)


def _to_str(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


def _from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class RedisBucketStore(BucketStore):
    """Bucket store shared by every instance pointing at the same Redis."""

    name = "redis"

    KEY_PREFIX_BUCKET = "ratelimit:bucket"
    KEY_PREFIX_INDEX = "ratelimit:buckets"
    KEY_PREFIX_VIOLATIONS = "ratelimit:violations"
    KEY_VIOLATION_SUBJECTS = "ratelimit:violation_subjects"

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        violation_history: Optional[int] = None,
    ) -> None:
        """Initialize the Redis bucket store.

        Args:
            redis_client: Optional Redis client instance
            redis_url: Redis connection URL (defaults to settings.redis_url)
            violation_history: Max violation records kept per subject
        """
        self._redis = redis_client
        self._redis_url = redis_url or settings.redis_url
        if violation_history is None:
            violation_history = settings.rate_limit_violation_history
        self._violation_history = violation_history

    def _get_redis(self) -> Any:
        """Get or create Redis connection."""
        if self._redis is None:
            timeout = settings.rate_limit_storage_timeout
            self._redis = aioredis.from_url(
                self._redis_url,
                socket_timeout=timeout,
                socket_connect_timeout=timeout,
            )
        return self._redis

    def _bucket_key(self, subject: str, resource: str) -> str:
        return f"{self.KEY_PREFIX_BUCKET}:{subject}:{resource}"

    def _index_key(self, subject: str) -> str:
        return f"{self.KEY_PREFIX_INDEX}:{subject}"

    def _violations_key(self, subject: str) -> str:
        return f"{self.KEY_PREFIX_VIOLATIONS}:{subject}"

    def _unavailable(self, operation: str, error: Exception) -> StorageUnavailableError:
        logger.error(f"Redis {operation} failed: {error}")
        return StorageUnavailableError(
            f"Redis {operation} failed: {type(error).__name__}", backend=self.name
        )

    async def load(self, subject: str, resource: str) -> Optional[StoredBucket]:
        try:
            raw = await self._get_redis().hgetall(self._bucket_key(subject, resource))
        except REDIS_EXCEPTIONS as e:
            raise self._unavailable("load", e) from e
        if not raw:
            return None
        data = {_to_str(k): _to_str(v) for k, v in raw.items()}
        return StoredBucket(
            state=BucketState(
                tokens_remaining=float(data["tokens"]),
                last_refill_at=_from_epoch(float(data["last_refill_at"])),
            ),
            version=int(data["version"]),
        )

    async def compare_and_set(
        self,
        subject: str,
        resource: str,
        expected_version: Optional[int],
        state: BucketState,
    ) -> bool:
        try:
            result = await self._get_redis().eval(
                COMPARE_AND_SET_SCRIPT,
                2,  # Number of keys
                self._bucket_key(subject, resource),  # KEYS[1]
                self._index_key(subject),  # KEYS[2]
                "" if expected_version is None else str(expected_version),  # ARGV[1]
                repr(float(state.tokens_remaining)),  # ARGV[2]
                repr(state.last_refill_at.timestamp()),  # ARGV[3]
                resource,  # ARGV[4]
            )
        except REDIS_EXCEPTIONS as e:
            raise self._unavailable("compare_and_set", e) from e
        return int(result) > 0

    async def delete(self, subject: str, resource: Optional[str] = None) -> int:
        client = self._get_redis()
        index_key = self._index_key(subject)
        try:
            if resource is not None:
                removed = await client.delete(self._bucket_key(subject, resource))
                await client.srem(index_key, resource)
                return int(removed)
            resources = [_to_str(r) for r in await client.smembers(index_key)]
            removed = 0
            if resources:
                removed = await client.delete(
                    *(self._bucket_key(subject, r) for r in resources)
                )
            await client.delete(index_key)
            return int(removed)
        except REDIS_EXCEPTIONS as e:
            raise self._unavailable("delete", e) from e

    async def append_violation(self, record: ViolationRecord) -> None:
        payload = json.dumps({
            "subject": record.subject,
            "resource": record.resource,
            "tokens_requested": record.tokens_requested,
            "tokens_available": record.tokens_available,
            "ts": record.violated_at.timestamp(),
            "ip_address": record.ip_address,
            "user_agent": record.user_agent,
        })
        key = self._violations_key(record.subject)
        client = self._get_redis()
        try:
            await client.lpush(key, payload)
            await client.ltrim(key, 0, self._violation_history - 1)
            await client.sadd(self.KEY_VIOLATION_SUBJECTS, record.subject)
        except REDIS_EXCEPTIONS as e:
            raise self._unavailable("append_violation", e) from e

    async def list_violations(self, subject: str, limit: int) -> List[ViolationRecord]:
        try:
            raw = await self._get_redis().lrange(self._violations_key(subject), 0, limit - 1)
        except REDIS_EXCEPTIONS as e:
            raise self._unavailable("list_violations", e) from e
        records = []
        for item in raw:
            data = json.loads(_to_str(item))
            records.append(ViolationRecord(
                subject=data["subject"],
                resource=data["resource"],
                tokens_requested=float(data["tokens_requested"]),
                tokens_available=float(data["tokens_available"]),
                violated_at=_from_epoch(float(data["ts"])),
                ip_address=data.get("ip_address"),
                user_agent=data.get("user_agent"),
            ))
        return records

    async def purge_violations(self, older_than: datetime) -> int:
        client = self._get_redis()
        cutoff = older_than.timestamp()
        removed = 0
        try:
            for subject in await client.smembers(self.KEY_VIOLATION_SUBJECTS):
                removed += int(await client.eval(
                    PURGE_VIOLATIONS_SCRIPT,
                    1,
                    self._violations_key(_to_str(subject)),
                    repr(cutoff),
                ))
        except REDIS_EXCEPTIONS as e:
            raise self._unavailable("purge_violations", e) from e
        return removed

    async def ping(self) -> bool:
        try:
            return bool(await self._get_redis().ping())
        except REDIS_EXCEPTIONS as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except REDIS_EXCEPTIONS as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._redis = None
