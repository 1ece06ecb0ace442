"""Tests for the SQL database bucket store (SQLite via aiosqlite)."""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tokengate.app.db.init_db import init_database, verify_connection
from tokengate.app.db.models import RateLimitBucket
from tokengate.app.exceptions import StorageUnavailableError
from tokengate.app.ratelimit.bucket import BucketState
from tokengate.app.ratelimit.limiter import RateLimiterService
from tokengate.app.ratelimit.storage import DatabaseBucketStore, ViolationRecord

from tests.fakes import T0


@pytest_asyncio.fixture
async def engine(tmp_path):
    db_path = tmp_path / "ratelimit.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    await init_database(engine=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_maker):
    return DatabaseBucketStore(session_maker=session_maker)


def state(tokens: float, seconds: float = 0) -> BucketState:
    return BucketState(tokens_remaining=tokens, last_refill_at=T0 + timedelta(seconds=seconds))


class TestCompareAndSet:
    """Tests for optimistic concurrency on the buckets table."""

    @pytest.mark.asyncio
    async def test_load_missing_bucket(self, store):
        assert await store.load("user-1", "/api/test") is None

    @pytest.mark.asyncio
    async def test_insert_then_load(self, store):
        assert await store.compare_and_set("user-1", "/api/test", None, state(4.5)) is True

        stored = await store.load("user-1", "/api/test")

        assert stored.version == 1
        assert stored.state.tokens_remaining == 4.5
        assert stored.state.last_refill_at == T0
        assert stored.state.last_refill_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_second_insert_conflicts(self, store):
        """The unique constraint turns a lost creation race into a conflict."""
        assert await store.compare_and_set("user-1", "/api/test", None, state(4)) is True
        assert await store.compare_and_set("user-1", "/api/test", None, state(3)) is False

        stored = await store.load("user-1", "/api/test")
        assert stored.state.tokens_remaining == 4

    @pytest.mark.asyncio
    async def test_update_with_current_version(self, store):
        await store.compare_and_set("user-1", "/api/test", None, state(4))

        assert await store.compare_and_set("user-1", "/api/test", 1, state(3, 1)) is True

        stored = await store.load("user-1", "/api/test")
        assert stored.version == 2
        assert stored.state.tokens_remaining == 3
        assert stored.state.last_refill_at == T0 + timedelta(seconds=1)

    @pytest.mark.asyncio
    async def test_update_with_stale_version_conflicts(self, store):
        await store.compare_and_set("user-1", "/api/test", None, state(4))
        await store.compare_and_set("user-1", "/api/test", 1, state(3))

        assert await store.compare_and_set("user-1", "/api/test", 1, state(0)) is False
        assert (await store.load("user-1", "/api/test")).state.tokens_remaining == 3

    @pytest.mark.asyncio
    async def test_update_of_deleted_bucket_conflicts(self, store):
        await store.compare_and_set("user-1", "/api/test", None, state(4))
        await store.delete("user-1", "/api/test")
        assert await store.compare_and_set("user-1", "/api/test", 1, state(3)) is False


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_one_and_all(self, store, session_maker):
        for resource in ("/a", "/b", "/c"):
            await store.compare_and_set("user-1", resource, None, state(1))
        await store.compare_and_set("user-2", "/a", None, state(1))

        assert await store.delete("user-1", "/a") == 1
        assert await store.delete("user-1") == 2
        assert await store.delete("user-1") == 0

        async with session_maker() as session:
            rows = (await session.execute(select(RateLimitBucket))).scalars().all()
        assert [(r.subject, r.resource) for r in rows] == [("user-2", "/a")]


class TestViolations:
    @pytest.mark.asyncio
    async def test_append_and_list_newest_first(self, store):
        for i in range(3):
            await store.append_violation(ViolationRecord(
                subject="user-1",
                resource="/api/test",
                tokens_requested=1,
                tokens_available=0.1 * i,
                violated_at=T0 + timedelta(seconds=i),
                ip_address="10.0.0.1",
                user_agent="pytest",
            ))

        records = await store.list_violations("user-1", limit=2)

        assert [r.violated_at for r in records] == [
            T0 + timedelta(seconds=2),
            T0 + timedelta(seconds=1),
        ]
        assert records[0].ip_address == "10.0.0.1"
        assert records[0].user_agent == "pytest"
        assert await store.list_violations("user-2", limit=10) == []

    @pytest.mark.asyncio
    async def test_purge_before_cutoff(self, store):
        for i in range(4):
            await store.append_violation(ViolationRecord(
                subject="user-1",
                resource="/api/test",
                tokens_requested=1,
                tokens_available=0,
                violated_at=T0 + timedelta(days=i),
            ))

        removed = await store.purge_violations(T0 + timedelta(days=2))

        assert removed == 2
        remaining = await store.list_violations("user-1", limit=10)
        assert len(remaining) == 2


class TestLimiterOnDatabase:
    """End-to-end checks through the limiter on a real SQLite file."""

    @pytest.mark.asyncio
    async def test_concurrent_checks_admit_capacity(self, store, policies, clock):
        limiter = RateLimiterService(
            store=store,
            policies=policies,
            clock=clock,
            fail_closed=True,
            storage_timeout=10.0,
            max_retries=50,
        )

        results = await asyncio.gather(*[
            limiter.check_rate_limit("user-1", "/api/test") for _ in range(10)
        ])

        assert sum(1 for r in results if r.allowed) == 5
        assert not any(r.degraded for r in results)
        stored = await store.load("user-1", "/api/test")
        assert stored.state.tokens_remaining == pytest.approx(0)
        assert len(await limiter.get_violations("user-1", limit=20)) == 5

    @pytest.mark.asyncio
    async def test_status_and_reset(self, store, policies, clock):
        limiter = RateLimiterService(store=store, policies=policies, clock=clock)
        for _ in range(6):
            await limiter.check_rate_limit("user-1", "/api/test")

        first = await limiter.get_status("user-1", "/api/test")
        second = await limiter.get_status("user-1", "/api/test")
        assert first == second
        assert first.tokens_available == 0

        assert await limiter.reset("user-1", "/api/test") == 1
        result = await limiter.check_rate_limit("user-1", "/api/test")
        assert result.allowed is True
        assert result.tokens_remaining == 4


class TestUnavailableDatabase:
    @pytest.mark.asyncio
    async def test_errors_become_storage_unavailable(self):
        class BrokenSession:
            async def __aenter__(self):
                raise OperationalError("SELECT 1", {}, Exception("unable to open database"))

            async def __aexit__(self, *exc):
                return False

        store = DatabaseBucketStore(session_maker=lambda: BrokenSession())

        with pytest.raises(StorageUnavailableError) as exc_info:
            await store.load("user-1", "/api/test")
        assert exc_info.value.backend == "database"
        assert await store.ping() is False

    @pytest.mark.asyncio
    async def test_verify_connection(self, engine):
        assert await verify_connection(engine) is True
