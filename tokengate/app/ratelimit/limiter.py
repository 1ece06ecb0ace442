"""Rate limiter service.

Orchestrates one rate limit check:
1. Resolve the bucket configuration and request cost for the resource
2. Load the bucket (or start a full one)
3. Apply refill and try to consume
4. Persist with compare-and-set, retrying with a fresh read on conflict
5. Record a violation if the request was denied

Storage failures never surface as exceptions from ``check_rate_limit``;
they are turned into a fail-open or fail-closed decision according to
``settings.rate_limit_fail_closed``. Write conflicts are contention, not
failure: they end in a denial, never in fail-open.
"""

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from tokengate.app.core.config import settings
from tokengate.app.core.logging import get_log_context, get_logger
from tokengate.app.exceptions import StorageUnavailableError
from tokengate.app.ratelimit.bucket import (
    BucketConfig,
    BucketState,
    ConsumeResult,
    compute_reset_time,
    consume,
    current_tokens,
    initial_state,
    utcnow,
    validate_cost,
)
from tokengate.app.ratelimit.policies import PolicyTable, get_policy_table
from tokengate.app.ratelimit.storage import (
    BucketStore,
    DatabaseBucketStore,
    InMemoryBucketStore,
    RedisBucketStore,
    ViolationRecord,
)

logger = get_logger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class RateLimitCheckResult:
    """Result of a rate limit check.

    ``degraded`` is True when the decision was made without consulting the
    bucket because storage failed (fail-open or fail-closed).
    """
    allowed: bool
    tokens_remaining: float
    capacity: float
    refill_rate: float
    cost: float
    reset_at: datetime
    retry_after_seconds: Optional[int] = None
    degraded: bool = False

    def to_headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": f"{self.capacity:g}",
            "X-RateLimit-Remaining": str(math.floor(self.tokens_remaining)),
            "X-RateLimit-Reset": self.reset_at.isoformat(),
        }
        if self.retry_after_seconds is not None:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "tokens_remaining": self.tokens_remaining,
            "capacity": self.capacity,
            "refill_rate": self.refill_rate,
            "cost": self.cost,
            "reset_at": self.reset_at.isoformat(),
            "retry_after_seconds": self.retry_after_seconds,
            "degraded": self.degraded,
        }


@dataclass(frozen=True)
class RateLimitStatus:
    """Non-consuming snapshot of a bucket."""
    tokens_available: float
    capacity: float
    refill_rate: float
    reset_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokens_available": self.tokens_available,
            "capacity": self.capacity,
            "refill_rate": self.refill_rate,
            "reset_at": self.reset_at.isoformat(),
        }


class RateLimiterService:
    """Token bucket rate limiter over a pluggable bucket store."""

    def __init__(
        self,
        store: BucketStore,
        policies: Optional[PolicyTable] = None,
        clock: Clock = utcnow,
        fail_closed: Optional[bool] = None,
        storage_timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        storage_retry_after: Optional[int] = None,
    ):
        """Initialize the limiter.

        Args:
            store: Bucket persistence backend
            policies: Policy table (defaults to the process-wide table)
            clock: Returns the current aware UTC time
            fail_closed: Deny instead of allow when storage fails
            storage_timeout: Seconds allowed for each storage call
            max_retries: Compare-and-set attempts before a conflicting check
                is decided from its last snapshot
            storage_retry_after: Retry-After advertised on fail-closed denials
        """
        self.store = store
        self.policies = policies if policies is not None else get_policy_table()
        self.clock = clock
        self.fail_closed = (
            settings.rate_limit_fail_closed if fail_closed is None else fail_closed
        )
        self.storage_timeout = (
            settings.rate_limit_storage_timeout if storage_timeout is None else storage_timeout
        )
        self.max_retries = settings.rate_limit_max_retries if max_retries is None else max_retries
        self.storage_retry_after = (
            settings.rate_limit_storage_retry_after
            if storage_retry_after is None
            else storage_retry_after
        )
        if self.storage_timeout <= 0:
            raise ValueError("storage_timeout must be positive")
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.storage_retry_after < 1:
            raise ValueError("storage_retry_after must be at least 1")

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Await a storage call, bounded by the storage timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.storage_timeout)
        except asyncio.TimeoutError as e:
            raise StorageUnavailableError(
                f"Storage {operation} timed out after {self.storage_timeout}s",
                backend=self.store.name,
            ) from e

    def _resolve(self, resource: str, cost_override: Optional[float]) -> tuple[BucketConfig, float]:
        config = self.policies.resolve_config(resource)
        if cost_override is not None:
            cost = cost_override
        else:
            cost = self.policies.resolve_cost(resource, config.cost)
        validate_cost(config, cost)
        return config, cost

    async def check_rate_limit(
        self,
        subject: str,
        resource: str,
        metadata: Optional[Dict[str, Optional[str]]] = None,
        cost_override: Optional[float] = None,
    ) -> RateLimitCheckResult:
        """Check and consume tokens for one request.

        Args:
            subject: Caller identity the bucket is scoped to
            resource: Endpoint / operation identifier
            metadata: Optional ``ip_address`` / ``user_agent`` for the
                violation record
            cost_override: Tokens to consume instead of the resolved cost

        Returns:
            RateLimitCheckResult. A denial is a normal result, not an error.

        Raises:
            ValueError: If subject or resource is empty
            PolicyConfigurationError: If the cost exceeds the bucket capacity
        """
        if not subject:
            raise ValueError("subject must be a non-empty string")
        if not resource:
            raise ValueError("resource must be a non-empty string")

        config, cost = self._resolve(resource, cost_override)

        try:
            outcome = await self._consume_with_retry(subject, resource, config, cost)
        except StorageUnavailableError as e:
            return self._handle_storage_failure(subject, resource, config, cost, str(e))

        result = RateLimitCheckResult(
            allowed=outcome.allowed,
            tokens_remaining=outcome.tokens_remaining,
            capacity=config.capacity,
            refill_rate=config.refill_rate,
            cost=cost,
            reset_at=outcome.reset_at,
            retry_after_seconds=outcome.retry_after_seconds,
        )

        if not result.allowed:
            logger.info(
                "rate_limit.denied",
                extra=get_log_context(
                    subject=subject,
                    resource=resource,
                    outcome="denied",
                    tokens_requested=cost,
                    tokens_available=round(outcome.tokens_remaining, 3),
                    retry_after=outcome.retry_after_seconds,
                ),
            )
            await self._record_violation(subject, resource, outcome, metadata)

        return result

    async def _consume_with_retry(
        self,
        subject: str,
        resource: str,
        config: BucketConfig,
        cost: float,
    ) -> ConsumeResult:
        """Run the read-modify-write cycle until a write wins.

        Conflicts mean other callers are writing the same bucket, not that
        storage is down, so they never end in the fail-open path. After
        ``max_retries`` conflicts:

        - a snapshot that already denies is returned as is; the decision
          was true at the instant it was read and admits nothing
        - a snapshot that would admit keeps retrying until the storage
          timeout elapses, then the request is denied with a one second
          retry

        Raises:
            StorageUnavailableError: If a storage call fails or times out
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.storage_timeout
        attempt = 0

        while True:
            attempt += 1
            stored = await self._call("load", self.store.load(subject, resource))
            now = self.clock()
            if stored is None:
                state, expected_version = initial_state(config, now), None
            else:
                state, expected_version = stored.state, stored.version

            outcome = consume(config, state, now, cost)
            written = await self._call(
                "compare_and_set",
                self.store.compare_and_set(subject, resource, expected_version, outcome.state),
            )
            if written:
                return outcome

            logger.debug(
                "rate_limit.cas_conflict",
                extra=get_log_context(subject=subject, resource=resource, attempt=attempt),
            )
            if attempt < self.max_retries:
                continue
            if not outcome.allowed:
                return outcome
            if loop.time() >= deadline:
                return self._contention_denial(subject, resource, config, state, now, cost, attempt)

    def _contention_denial(
        self,
        subject: str,
        resource: str,
        config: BucketConfig,
        state: BucketState,
        now: datetime,
        cost: float,
        attempts: int,
    ) -> ConsumeResult:
        tokens = current_tokens(config, state, now)
        logger.warning(
            f"rate_limit.contention: no write won after {attempts} attempts. Request denied.",
            extra=get_log_context(
                subject=subject,
                resource=resource,
                outcome="contention",
                attempts=attempts,
            ),
        )
        return ConsumeResult(
            allowed=False,
            tokens_remaining=tokens,
            reset_at=compute_reset_time(config, tokens, now),
            state=BucketState(tokens_remaining=tokens, last_refill_at=max(now, state.last_refill_at)),
            cost=cost,
            retry_after_seconds=1,
        )

    async def _record_violation(
        self,
        subject: str,
        resource: str,
        outcome: ConsumeResult,
        metadata: Optional[Dict[str, Optional[str]]],
    ) -> None:
        metadata = metadata or {}
        record = ViolationRecord(
            subject=subject,
            resource=resource,
            tokens_requested=outcome.cost,
            tokens_available=outcome.tokens_remaining,
            violated_at=self.clock(),
            ip_address=metadata.get("ip_address"),
            user_agent=metadata.get("user_agent"),
        )
        try:
            await self._call("append_violation", self.store.append_violation(record))
        except StorageUnavailableError as e:
            # The denial stands; only the audit trail is incomplete
            logger.error(
                f"rate_limit.violation_not_recorded: {e}",
                extra=get_log_context(subject=subject, resource=resource, outcome="denied"),
            )

    def _handle_storage_failure(
        self,
        subject: str,
        resource: str,
        config: BucketConfig,
        cost: float,
        reason: str,
    ) -> RateLimitCheckResult:
        """Handle storage failure with configurable fail-open/fail-closed policy.

        Args:
            reason: Description of the failure for logging purposes

        Returns:
            RateLimitCheckResult based on fail_closed configuration
        """
        now = self.clock()

        if self.fail_closed:
            logger.error(
                f"rate_limit.storage_failure: {reason}. Request denied (fail-closed).",
                extra=get_log_context(
                    subject=subject,
                    resource=resource,
                    outcome="fail_closed",
                    backend=self.store.name,
                ),
            )
            return RateLimitCheckResult(
                allowed=False,
                tokens_remaining=0.0,
                capacity=config.capacity,
                refill_rate=config.refill_rate,
                cost=cost,
                reset_at=now + timedelta(seconds=self.storage_retry_after),
                retry_after_seconds=self.storage_retry_after,
                degraded=True,
            )

        logger.warning(
            f"rate_limit.storage_failure: {reason}. "
            "Request allowed without rate limit check (fail-open).",
            extra=get_log_context(
                subject=subject,
                resource=resource,
                outcome="fail_open",
                backend=self.store.name,
            ),
        )
        return RateLimitCheckResult(
            allowed=True,
            tokens_remaining=0.0,
            capacity=config.capacity,
            refill_rate=config.refill_rate,
            cost=cost,
            reset_at=now,
            degraded=True,
        )

    async def get_status(self, subject: str, resource: str) -> RateLimitStatus:
        """Current bucket level without consuming tokens or writing anything.

        Raises:
            StorageUnavailableError: If the store cannot be read
        """
        config = self.policies.resolve_config(resource)
        stored = await self._call("load", self.store.load(subject, resource))
        now = self.clock()

        if stored is None:
            tokens = float(config.capacity)
        else:
            tokens = current_tokens(config, stored.state, now)

        return RateLimitStatus(
            tokens_available=tokens,
            capacity=config.capacity,
            refill_rate=config.refill_rate,
            reset_at=compute_reset_time(config, tokens, now),
        )

    async def reset(self, subject: str, resource: Optional[str] = None) -> int:
        """Delete one bucket, or every bucket of a subject.

        The next check starts from a full bucket.
        """
        removed = await self._call("delete", self.store.delete(subject, resource))
        logger.info(
            f"Rate limit reset: {removed} bucket(s) removed",
            extra=get_log_context(subject=subject, resource=resource, outcome="reset"),
        )
        return removed

    async def get_violations(self, subject: str, limit: int = 10) -> List[ViolationRecord]:
        """Most recent violations for a subject, newest first."""
        if limit < 1:
            raise ValueError("limit must be at least 1")
        return await self._call("list_violations", self.store.list_violations(subject, limit))

    async def purge_violations(self, older_than: datetime) -> int:
        """Delete violation records older than a cutoff."""
        removed = await self._call("purge_violations", self.store.purge_violations(older_than))
        logger.info(f"Purged {removed} rate limit violation(s) older than {older_than.isoformat()}")
        return removed

    async def ping(self) -> bool:
        """Check that the store is reachable within the storage timeout."""
        try:
            return await self._call("ping", self.store.ping())
        except StorageUnavailableError as e:
            logger.warning(f"Rate limit storage ping failed: {e}")
            return False

    async def close(self) -> None:
        await self.store.close()


def build_store(backend: Optional[str] = None) -> BucketStore:
    """Create the bucket store selected by ``settings.rate_limit_backend``."""
    backend = backend or settings.rate_limit_backend
    if backend == "redis":
        logger.info("Using Redis rate limit backend")
        return RedisBucketStore()
    if backend == "memory":
        logger.info("Using in-memory rate limit backend")
        return InMemoryBucketStore()
    logger.info("Using database rate limit backend")
    return DatabaseBucketStore()


# Global instance
_rate_limiter: Optional[RateLimiterService] = None


def get_rate_limiter() -> RateLimiterService:
    """Get the process-wide rate limiter."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiterService(store=build_store(), policies=get_policy_table())
    return _rate_limiter


def reset_rate_limiter() -> None:
    """Reset the global rate limiter (for testing)."""
    global _rate_limiter
    _rate_limiter = None
