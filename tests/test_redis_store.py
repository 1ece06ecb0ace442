"""Tests for the Redis bucket store.

Uses a dict-backed mock Redis client whose ``eval`` emulates the Lua
scripts, so no Redis server is needed.
"""

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis as redis_lib

from tokengate.app.exceptions import StorageUnavailableError
from tokengate.app.ratelimit.bucket import BucketState
from tokengate.app.ratelimit.limiter import RateLimiterService
from tokengate.app.ratelimit.storage import RedisBucketStore, ViolationRecord
from tokengate.app.ratelimit.storage.redis_lua import (
    COMPARE_AND_SET_SCRIPT,
    PURGE_VIOLATIONS_SCRIPT,
)

from tests.fakes import T0


def _b(value) -> bytes:
    return value if isinstance(value, bytes) else str(value).encode()


@pytest.fixture
def mock_redis():
    """Create a mock Redis client for testing."""
    redis = MagicMock()
    redis.hashes = {}
    redis.sets = {}
    redis.lists = {}

    async def mock_hgetall(key):
        # Yield so concurrent checks interleave like real network calls
        await asyncio.sleep(0)
        return {_b(k): _b(v) for k, v in redis.hashes.get(key, {}).items()}

    async def mock_delete(*keys):
        removed = 0
        for key in keys:
            for store in (redis.hashes, redis.sets, redis.lists):
                if store.pop(key, None) is not None:
                    removed += 1
        return removed

    async def mock_sadd(key, *members):
        redis.sets.setdefault(key, set()).update(members)
        return len(members)

    async def mock_srem(key, *members):
        redis.sets.get(key, set()).difference_update(members)
        return len(members)

    async def mock_smembers(key):
        return {_b(m) for m in redis.sets.get(key, set())}

    async def mock_lpush(key, value):
        redis.lists.setdefault(key, []).insert(0, value)
        return len(redis.lists[key])

    async def mock_ltrim(key, start, end):
        redis.lists[key] = redis.lists.get(key, [])[start:end + 1]
        return True

    async def mock_lrange(key, start, end):
        return [_b(v) for v in redis.lists.get(key, [])[start:end + 1]]

    async def mock_eval(script, num_keys, *args):
        """Mock Redis Lua script execution.

        COMPARE_AND_SET_SCRIPT:
        - KEYS[1]: bucket hash, KEYS[2]: resource index set
        - ARGV[1]: expected version, ARGV[2]: tokens, ARGV[3]: last_refill_at,
          ARGV[4]: resource

        PURGE_VIOLATIONS_SCRIPT:
        - KEYS[1]: violation list, ARGV[1]: cutoff
        """
        keys, argv = args[:num_keys], args[num_keys:]

        if script == COMPARE_AND_SET_SCRIPT:
            bucket_key, index_key = keys
            expected, tokens, last_refill_at, resource = argv
            current = redis.hashes.get(bucket_key, {}).get("version")
            if expected == "":
                if current is not None:
                    return 0
                new_version = 1
            else:
                if current is None or current != expected:
                    return 0
                new_version = int(current) + 1
            redis.hashes[bucket_key] = {
                "tokens": tokens,
                "last_refill_at": last_refill_at,
                "version": str(new_version),
            }
            redis.sets.setdefault(index_key, set()).add(resource)
            return new_version

        if script == PURGE_VIOLATIONS_SCRIPT:
            (list_key,), (cutoff,) = keys, argv
            items = redis.lists.get(list_key, [])
            removed = 0
            while items and json.loads(items[-1])["ts"] < float(cutoff):
                items.pop()
                removed += 1
            return removed

        raise AssertionError("unexpected script")

    redis.hgetall = mock_hgetall
    redis.delete = mock_delete
    redis.sadd = mock_sadd
    redis.srem = mock_srem
    redis.smembers = mock_smembers
    redis.lpush = mock_lpush
    redis.ltrim = mock_ltrim
    redis.lrange = mock_lrange
    redis.eval = mock_eval
    redis.ping = AsyncMock(return_value=True)
    redis.aclose = AsyncMock()

    return redis


@pytest.fixture
def store(mock_redis):
    return RedisBucketStore(redis_client=mock_redis, violation_history=3)


def state(tokens: float, seconds: float = 0) -> BucketState:
    return BucketState(tokens_remaining=tokens, last_refill_at=T0 + timedelta(seconds=seconds))


class TestCompareAndSet:
    """Tests for the Lua compare-and-set path."""

    @pytest.mark.asyncio
    async def test_create_then_load(self, store, mock_redis):
        assert await store.compare_and_set("user-1", "/api/test", None, state(4.5)) is True

        stored = await store.load("user-1", "/api/test")

        assert stored.version == 1
        assert stored.state.tokens_remaining == 4.5
        assert stored.state.last_refill_at == T0
        assert mock_redis.sets["ratelimit:buckets:user-1"] == {"/api/test"}

    @pytest.mark.asyncio
    async def test_create_conflicts_when_bucket_exists(self, store):
        await store.compare_and_set("user-1", "/api/test", None, state(4))
        assert await store.compare_and_set("user-1", "/api/test", None, state(3)) is False

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, store):
        await store.compare_and_set("user-1", "/api/test", None, state(4))
        assert await store.compare_and_set("user-1", "/api/test", 1, state(3)) is True
        assert await store.compare_and_set("user-1", "/api/test", 1, state(2)) is False
        assert (await store.load("user-1", "/api/test")).version == 2

    @pytest.mark.asyncio
    async def test_key_layout(self, store, mock_redis):
        await store.compare_and_set("user-1", "/api/test", None, state(1))
        assert "ratelimit:bucket:user-1:/api/test" in mock_redis.hashes


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_single_resource(self, store, mock_redis):
        await store.compare_and_set("user-1", "/a", None, state(1))
        await store.compare_and_set("user-1", "/b", None, state(1))

        assert await store.delete("user-1", "/a") == 1
        assert await store.load("user-1", "/a") is None
        assert mock_redis.sets["ratelimit:buckets:user-1"] == {"/b"}

    @pytest.mark.asyncio
    async def test_delete_whole_subject(self, store):
        await store.compare_and_set("user-1", "/a", None, state(1))
        await store.compare_and_set("user-1", "/b", None, state(1))
        await store.compare_and_set("user-2", "/a", None, state(1))

        assert await store.delete("user-1") == 2
        assert await store.load("user-1", "/b") is None
        assert await store.load("user-2", "/a") is not None

    @pytest.mark.asyncio
    async def test_delete_unknown_subject(self, store):
        assert await store.delete("nobody") == 0


class TestViolations:
    @pytest.mark.asyncio
    async def test_list_newest_first_and_trimmed(self, store):
        for i in range(5):
            await store.append_violation(ViolationRecord(
                subject="user-1",
                resource="/api/test",
                tokens_requested=1,
                tokens_available=0,
                violated_at=T0 + timedelta(seconds=i),
                ip_address="10.0.0.1",
            ))

        records = await store.list_violations("user-1", limit=10)

        # History capped at 3 per subject
        assert [r.violated_at for r in records] == [
            T0 + timedelta(seconds=4),
            T0 + timedelta(seconds=3),
            T0 + timedelta(seconds=2),
        ]
        assert records[0].ip_address == "10.0.0.1"
        assert len(await store.list_violations("user-1", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_purge(self, store):
        for subject in ("user-1", "user-2"):
            for i in range(3):
                await store.append_violation(ViolationRecord(
                    subject=subject,
                    resource="/api/test",
                    tokens_requested=1,
                    tokens_available=0,
                    violated_at=T0 + timedelta(days=i),
                ))

        removed = await store.purge_violations(T0 + timedelta(days=1))

        assert removed == 2
        assert len(await store.list_violations("user-1", limit=10)) == 2
        assert len(await store.list_violations("user-2", limit=10)) == 2


class TestRedisFailures:
    """Redis errors surface as StorageUnavailableError."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        redis_lib.ConnectionError("refused"),
        redis_lib.TimeoutError("slow"),
        redis_lib.RedisError("boom"),
    ])
    async def test_load_errors(self, mock_redis, error):
        mock_redis.hgetall = AsyncMock(side_effect=error)
        store = RedisBucketStore(redis_client=mock_redis)

        with pytest.raises(StorageUnavailableError) as exc_info:
            await store.load("user-1", "/api/test")
        assert exc_info.value.backend == "redis"

    @pytest.mark.asyncio
    async def test_limiter_fails_open_on_redis_outage(self, mock_redis, policies, clock):
        mock_redis.hgetall = AsyncMock(side_effect=redis_lib.ConnectionError("refused"))
        limiter = RateLimiterService(
            store=RedisBucketStore(redis_client=mock_redis),
            policies=policies,
            clock=clock,
            fail_closed=False,
        )

        result = await limiter.check_rate_limit("user-1", "/api/test")

        assert result.allowed is True
        assert result.degraded is True

    @pytest.mark.asyncio
    async def test_ping(self, mock_redis):
        store = RedisBucketStore(redis_client=mock_redis)
        assert await store.ping() is True
        mock_redis.ping = AsyncMock(side_effect=redis_lib.ConnectionError("refused"))
        assert await store.ping() is False

    @pytest.mark.asyncio
    async def test_close(self, mock_redis):
        store = RedisBucketStore(redis_client=mock_redis)
        await store.close()
        mock_redis.aclose.assert_awaited_once()


class TestLimiterOnRedis:
    @pytest.mark.asyncio
    async def test_concurrent_checks_admit_capacity(self, store, policies, clock):
        limiter = RateLimiterService(
            store=store,
            policies=policies,
            clock=clock,
            fail_closed=True,
            max_retries=30,
        )

        results = await asyncio.gather(*[
            limiter.check_rate_limit("user-1", "/api/test") for _ in range(20)
        ])

        assert sum(1 for r in results if r.allowed) == 5
        assert not any(r.degraded for r in results)
