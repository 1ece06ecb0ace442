"""Token bucket arithmetic.

Pure functions over a bucket configuration and its last observed state;
no I/O and no hidden state. Persistence is handled by the caller.

How it works:
- A bucket holds up to ``capacity`` tokens
- Tokens refill continuously at ``refill_rate`` per second
- A request consumes ``cost`` tokens; if not enough are available it is denied

Refill is computed lazily from the elapsed time on every observation, so no
timer or background sweep is needed.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from tokengate.app.exceptions import PolicyConfigurationError

# Float tolerance on the admission comparison. Without it, waiting exactly
# ``retry_after_seconds`` could leave the bucket a rounding error short.
TOKEN_EPSILON = 1e-9


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _check_positive(name: str, value: float) -> None:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise PolicyConfigurationError(f"Token bucket {name} must be a number")
    if not math.isfinite(value) or value <= 0:
        raise PolicyConfigurationError(f"Token bucket {name} must be positive")


@dataclass(frozen=True)
class BucketConfig:
    """Immutable bucket configuration.

    Attributes:
        capacity: Max tokens the bucket can hold (burst size)
        refill_rate: Tokens added per second of wall-clock time
        cost: Tokens consumed per admitted request
    """
    capacity: float
    refill_rate: float
    cost: float = 1

    def __post_init__(self) -> None:
        _check_positive("capacity", self.capacity)
        _check_positive("refill rate", self.refill_rate)
        _check_positive("cost", self.cost)

    def to_dict(self) -> dict:
        return {
            "capacity": self.capacity,
            "refill_rate": self.refill_rate,
            "cost": self.cost,
        }


@dataclass
class BucketState:
    """Last observed state of one bucket."""
    tokens_remaining: float
    last_refill_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ConsumeResult:
    """Outcome of a consume attempt.

    ``state`` is the state to persist, for both admitted and denied
    requests: its ``last_refill_at`` advances to the decision instant (and
    never moves backwards) so the next observation does not count the same
    refill twice.
    """
    allowed: bool
    tokens_remaining: float
    reset_at: datetime
    state: BucketState
    cost: float
    retry_after_seconds: Optional[int] = None


def initial_state(config: BucketConfig, now: Optional[datetime] = None) -> BucketState:
    """Create the state of a brand new (full) bucket."""
    return BucketState(tokens_remaining=float(config.capacity), last_refill_at=now or utcnow())


def current_tokens(config: BucketConfig, state: BucketState, now: datetime) -> float:
    """Token level at ``now``, refill applied and clamped to [0, capacity].

    A clock that moves backwards yields zero elapsed time, never a negative
    refill.
    """
    elapsed = max(0.0, (now - state.last_refill_at).total_seconds())
    tokens = state.tokens_remaining + elapsed * config.refill_rate
    return max(0.0, min(float(config.capacity), tokens))


def validate_cost(config: BucketConfig, cost: float) -> None:
    """Reject costs that are non-positive or larger than the bucket.

    Raises:
        PolicyConfigurationError: If no amount of waiting could admit a
            request of this cost.
    """
    _check_positive("cost", cost)
    if cost > config.capacity:
        raise PolicyConfigurationError(
            f"Request cost {cost:g} exceeds bucket capacity {config.capacity:g}; "
            "the request could never be admitted"
        )


def compute_reset_time(config: BucketConfig, tokens: float, now: datetime) -> datetime:
    """Instant at which the bucket will be completely full again."""
    seconds_to_fill = max(0.0, config.capacity - tokens) / config.refill_rate
    return now + timedelta(seconds=seconds_to_fill)


def consume(
    config: BucketConfig,
    state: BucketState,
    now: datetime,
    cost: Optional[float] = None,
) -> ConsumeResult:
    """Decide whether a request of ``cost`` tokens is admitted at ``now``.

    Args:
        config: Bucket configuration
        state: Last persisted state
        now: Decision instant
        cost: Tokens required (defaults to ``config.cost``)

    Returns:
        ConsumeResult with the decision and the state to persist

    Raises:
        PolicyConfigurationError: If cost is not positive or exceeds the
            capacity, in which case no amount of waiting would admit it.
    """
    if cost is None:
        cost = config.cost
    validate_cost(config, cost)

    tokens = current_tokens(config, state, now)
    # Never move the observation point backwards, or the same interval
    # would be refilled twice once the clock recovers.
    observed_at = max(now, state.last_refill_at)

    if tokens + TOKEN_EPSILON >= cost:
        remaining = max(0.0, tokens - cost)
        return ConsumeResult(
            allowed=True,
            tokens_remaining=remaining,
            reset_at=compute_reset_time(config, remaining, now),
            state=BucketState(tokens_remaining=remaining, last_refill_at=observed_at),
            cost=cost,
        )

    deficit = cost - tokens
    retry_after = max(1, math.ceil(deficit / config.refill_rate))
    return ConsumeResult(
        allowed=False,
        tokens_remaining=tokens,
        reset_at=compute_reset_time(config, tokens, now),
        state=BucketState(tokens_remaining=tokens, last_refill_at=observed_at),
        cost=cost,
        retry_after_seconds=retry_after,
    )


def describe(config: BucketConfig, state: BucketState, now: Optional[datetime] = None) -> str:
    """Human-readable bucket level, e.g. ``"4.5/10 tokens (45% full)"``."""
    tokens = current_tokens(config, state, now or utcnow())
    percent_full = tokens / config.capacity * 100
    return f"{tokens:.1f}/{config.capacity:g} tokens ({percent_full:.0f}% full)"
