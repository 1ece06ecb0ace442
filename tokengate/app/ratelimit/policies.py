"""Rate limit policy table.

Maps resource identifiers (endpoints) to bucket configurations.

Philosophy:
- Generous limits for normal usage
- Strict limits for expensive operations
- Allows bursts, smooths to steady rate

Example: capacity=10, refill_rate=1 means 10 requests instantly, then one
per second (60 per minute, 3600 per hour).

The table is built once at startup and never mutated afterwards.
"""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Pattern, Sequence

from tokengate.app.core.config import settings
from tokengate.app.core.logging import get_logger
from tokengate.app.exceptions import PolicyConfigurationError
from tokengate.app.ratelimit.bucket import BucketConfig

logger = get_logger(__name__)

WILDCARD = "*"


@dataclass(frozen=True)
class PolicyEntry:
    """A resource pattern with its bucket configuration."""
    pattern: str
    config: BucketConfig
    description: str = ""

    @property
    def is_wildcard(self) -> bool:
        return WILDCARD in self.pattern

    def to_dict(self) -> dict:
        return {
            "pattern": self.pattern,
            "description": self.description,
            **self.config.to_dict(),
        }


@dataclass(frozen=True)
class CostRule:
    """Cost multiplier applied when a resource name contains any marker."""
    markers: tuple[str, ...]
    multiplier: float
    description: str = ""

    def matches(self, resource: str) -> bool:
        return any(marker in resource for marker in self.markers)

    def to_dict(self) -> dict:
        return {
            "markers": list(self.markers),
            "multiplier": self.multiplier,
            "description": self.description,
        }


# Some operations consume more tokens than others. First matching rule wins.
COST_RULES: tuple[CostRule, ...] = (
    CostRule(("/generate", "/collect"), 2.0, "Expensive generation / collection"),
    CostRule(("/analyze", "/detect"), 1.5, "Expensive analysis / detection"),
)

RATE_LIMITS: tuple[PolicyEntry, ...] = (
    # AI Content Generation (expensive - external LLM API)
    PolicyEntry(
        "/api/ai/generate-content-plan",
        BucketConfig(capacity=5, refill_rate=0.1),  # then 1 every 10 seconds
        "AI content plan generation",
    ),
    # Trend Collection (expensive - scraping API)
    PolicyEntry(
        "/api/trends/collect",
        BucketConfig(capacity=3, refill_rate=0.05),  # 1 every 20 seconds
        "Manual trend collection",
    ),
    # Intelligence Analysis (expensive - complex queries)
    PolicyEntry(
        "/api/intelligence/analyze",
        BucketConfig(capacity=5, refill_rate=0.2),
        "User intelligence analysis",
    ),
    PolicyEntry(
        "/api/brand-matching/matches",
        BucketConfig(capacity=10, refill_rate=1),
        "Brand match calculation",
    ),
    PolicyEntry(
        "/api/algorithm/detect",
        BucketConfig(capacity=20, refill_rate=2),
        "Algorithm change detection",
    ),
    PolicyEntry(
        "/api/algorithm/metrics",
        BucketConfig(capacity=30, refill_rate=5),
        "Algorithm metrics retrieval",
    ),
    PolicyEntry(
        "/api/trends/instagram",
        BucketConfig(capacity=30, refill_rate=5),
        "Instagram trends reading",
    ),
    PolicyEntry(
        "/api/user/preferences",
        BucketConfig(capacity=20, refill_rate=2),
        "User preferences management",
    ),
    PolicyEntry(
        "/api/user/profile",
        BucketConfig(capacity=10, refill_rate=1),
        "Profile updates",
    ),
    # External OAuth flow, strict
    PolicyEntry(
        "/api/auth/instagram",
        BucketConfig(capacity=5, refill_rate=0.1),
        "Instagram OAuth flow",
    ),
)

# Endpoints not explicitly configured: generous but prevents abuse
DEFAULT_RATE_LIMIT = BucketConfig(capacity=100, refill_rate=10)


def compile_pattern(pattern: str) -> Pattern[str]:
    """Compile a wildcard pattern into an anchored regex.

    ``/api/foo/*`` matches ``/api/foo/bar`` and ``/api/foo/bar/baz``; every
    other character matches literally.
    """
    literal_parts = [re.escape(part) for part in pattern.split(WILDCARD)]
    return re.compile("^" + ".*".join(literal_parts) + "$")


@dataclass(frozen=True)
class PolicyTable:
    """Read-only resource -> BucketConfig lookup.

    Resolution order:
    1. Exact string match
    2. First wildcard entry (declaration order) whose pattern matches
    3. The global default
    """
    entries: tuple[PolicyEntry, ...]
    default: BucketConfig = DEFAULT_RATE_LIMIT
    cost_rules: tuple[CostRule, ...] = COST_RULES
    _exact: dict = field(init=False, repr=False, compare=False)
    _wildcards: tuple = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        entries = tuple(self.entries)
        object.__setattr__(self, "entries", entries)
        object.__setattr__(self, "cost_rules", tuple(self.cost_rules))

        exact: dict[str, PolicyEntry] = {}
        for entry in entries:
            # Earlier declarations win on duplicates
            if not entry.is_wildcard:
                exact.setdefault(entry.pattern, entry)
        object.__setattr__(self, "_exact", exact)
        object.__setattr__(
            self,
            "_wildcards",
            tuple((compile_pattern(e.pattern), e) for e in entries if e.is_wildcard),
        )

    def resolve_entry(self, resource: str) -> Optional[PolicyEntry]:
        """Return the policy entry governing ``resource``, or None for default."""
        entry = self._exact.get(resource)
        if entry is not None:
            return entry
        for regex, candidate in self._wildcards:
            if regex.match(resource):
                return candidate
        return None

    def resolve_config(self, resource: str) -> BucketConfig:
        """Find the bucket configuration for a resource."""
        entry = self.resolve_entry(resource)
        return entry.config if entry is not None else self.default

    def resolve_cost(self, resource: str, base_cost: float = 1) -> float:
        """Tokens a request to ``resource`` consumes."""
        for rule in self.cost_rules:
            if rule.matches(resource):
                return base_cost * rule.multiplier
        return base_cost

    def max_cost(self, config: BucketConfig) -> float:
        """Largest cost any resource could be charged against ``config``."""
        multiplier = max((rule.multiplier for rule in self.cost_rules), default=1.0)
        return config.cost * max(1.0, multiplier)

    def validate(self) -> None:
        """Check that every bucket can admit every request charged to it.

        An exact entry only ever sees its own pattern. A wildcard entry or
        the default can be matched by resources carrying any cost marker,
        so they are checked against the most expensive rule.

        Raises:
            PolicyConfigurationError: If a per-request cost exceeds the
                capacity of the bucket it is charged against.
        """
        for entry in self.entries:
            if entry.is_wildcard:
                cost = self.max_cost(entry.config)
            else:
                cost = self.resolve_cost(entry.pattern, entry.config.cost)
            if cost > entry.config.capacity:
                raise PolicyConfigurationError(
                    f"Policy '{entry.pattern}': request cost {cost:g} exceeds "
                    f"capacity {entry.config.capacity:g}"
                )
        default_cost = self.max_cost(self.default)
        if default_cost > self.default.capacity:
            raise PolicyConfigurationError(
                f"Default policy: request cost {default_cost:g} exceeds "
                f"capacity {self.default.capacity:g}"
            )

    def describe(self) -> dict:
        """Plain-dict view of the table for the admin API."""
        return {
            "default": self.default.to_dict(),
            "policies": [entry.to_dict() for entry in self.entries],
            "cost_rules": [rule.to_dict() for rule in self.cost_rules],
        }


def _entry_from_dict(item: dict) -> PolicyEntry:
    try:
        config = BucketConfig(
            capacity=item["capacity"],
            refill_rate=item["refill_rate"],
            cost=item.get("cost", 1),
        )
        return PolicyEntry(
            pattern=str(item["pattern"]),
            config=config,
            description=str(item.get("description", "")),
        )
    except KeyError as e:
        raise PolicyConfigurationError(f"Policy entry missing field {e}") from e


def build_policy_table(
    entries: Iterable[dict],
    default: Optional[dict] = None,
) -> PolicyTable:
    """Build and validate a policy table from plain dictionaries."""
    table = PolicyTable(
        entries=tuple(_entry_from_dict(item) for item in entries),
        default=(
            BucketConfig(
                capacity=default["capacity"],
                refill_rate=default["refill_rate"],
                cost=default.get("cost", 1),
            )
            if default
            else DEFAULT_RATE_LIMIT
        ),
    )
    table.validate()
    return table


def load_policy_table(path: str | Path) -> PolicyTable:
    """Load a policy table from a JSON file.

    Expected format::

        {
          "default": {"capacity": 100, "refill_rate": 10},
          "policies": [
            {"pattern": "/api/foo/*", "capacity": 5, "refill_rate": 1,
             "description": "Foo endpoints"}
          ]
        }

    Raises:
        PolicyConfigurationError: If the file is unreadable or invalid.
    """
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise PolicyConfigurationError(f"Cannot load policy file {path}: {e}") from e

    if isinstance(raw, list):
        raw = {"policies": raw}
    if not isinstance(raw, dict) or not isinstance(raw.get("policies", []), list):
        raise PolicyConfigurationError(f"Policy file {path} must contain a 'policies' list")

    return build_policy_table(raw.get("policies", []), raw.get("default"))


def _default_table(entries: Sequence[PolicyEntry] = RATE_LIMITS) -> PolicyTable:
    table = PolicyTable(entries=tuple(entries))
    table.validate()
    return table


# Global instance
_policy_table: Optional[PolicyTable] = None


def get_policy_table() -> PolicyTable:
    """Get the process-wide policy table, building and validating it once."""
    global _policy_table
    if _policy_table is None:
        if settings.rate_limit_policy_file:
            _policy_table = load_policy_table(settings.rate_limit_policy_file)
            logger.info(
                f"Loaded {len(_policy_table.entries)} rate limit policies "
                f"from {settings.rate_limit_policy_file}"
            )
        else:
            _policy_table = _default_table()
    return _policy_table


def reset_policy_table() -> None:
    """Reset the global policy table (for testing)."""
    global _policy_table
    _policy_table = None
