"""Token bucket rate limiting: bucket arithmetic, policies, stores and the limiter service."""

from tokengate.app.ratelimit.bucket import BucketConfig, BucketState, ConsumeResult, consume
from tokengate.app.ratelimit.limiter import (
    RateLimitCheckResult,
    RateLimiterService,
    RateLimitStatus,
    build_store,
    get_rate_limiter,
    reset_rate_limiter,
)
from tokengate.app.ratelimit.policies import PolicyEntry, PolicyTable, get_policy_table

__all__ = [
    "BucketConfig",
    "BucketState",
    "ConsumeResult",
    "consume",
    "PolicyEntry",
    "PolicyTable",
    "get_policy_table",
    "RateLimitCheckResult",
    "RateLimitStatus",
    "RateLimiterService",
    "build_store",
    "get_rate_limiter",
    "reset_rate_limiter",
]
