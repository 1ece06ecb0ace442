"""Shared fixtures for tokengate tests."""

import logging

import pytest

from tokengate.app.ratelimit.limiter import RateLimiterService, reset_rate_limiter
from tokengate.app.ratelimit.policies import reset_policy_table
from tokengate.app.ratelimit.storage import InMemoryBucketStore

from tests.fakes import TEST_POLICIES, FakeClock, ListHandler


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset global state before each test."""
    reset_policy_table()
    reset_rate_limiter()
    yield
    reset_policy_table()
    reset_rate_limiter()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policies():
    return TEST_POLICIES


@pytest.fixture
def memory_store():
    return InMemoryBucketStore()


@pytest.fixture
def limiter(memory_store, policies, clock):
    return RateLimiterService(
        store=memory_store,
        policies=policies,
        clock=clock,
        fail_closed=False,
        storage_timeout=1.0,
        max_retries=50,
        storage_retry_after=1,
    )


@pytest.fixture
def log_records():
    """Capture tokengate log records regardless of the configured handlers."""
    handler = ListHandler()
    logger = logging.getLogger("tokengate")
    previous_level = logger.level
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    yield handler
    logger.removeHandler(handler)
    logger.setLevel(previous_level)
