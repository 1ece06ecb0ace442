import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


RATE_LIMIT_BACKENDS = ("database", "redis", "memory")


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # JSON list, or a comma / whitespace separated string
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return _parse_cors_origins(parsed)

    parts = [p for p in re.split(r"[,\s]+", raw) if p]
    if "*" in parts:
        return ["*"]
    return list(dict.fromkeys(parts))


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Database settings (used by the "database" rate limit backend)
    database_url: str = "sqlite+aiosqlite:///./tokengate.db"
    db_pool_size: int = 20
    db_max_overflow: int = 10
    db_pool_timeout: int = 30  # Seconds to wait for a pooled connection
    db_pool_recycle: int = 300  # Recycle every 5 minutes
    db_pool_pre_ping: bool = True
    db_command_timeout: float = 5.0  # asyncpg per-command timeout

    # Redis settings (used by the "redis" rate limit backend)
    redis_url: str = "redis://localhost:6379/0"

    # Rate limiting settings
    rate_limit_backend: str = "database"  # database | redis | memory
    rate_limit_fail_closed: bool = (
        False  # If True, deny requests when the bucket store is unavailable
    )
    rate_limit_storage_timeout: float = 2.0  # Per storage call, in seconds
    rate_limit_max_retries: int = 25  # Compare-and-set attempts per check
    rate_limit_storage_retry_after: int = 1  # Retry-After sent when failing closed
    rate_limit_allow_anonymous: bool = (
        False  # If True, requests without a subject skip rate limiting
    )
    rate_limit_violation_history: int = 1000  # Redis violation list cap per subject
    rate_limit_policy_file: str = ""  # Optional JSON policy table

    # Admin API
    admin_token: str = ""

    cors_origins: Annotated[list[str], NoDecode] = ["*"]  # Allowed CORS origins

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("rate_limit_backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate the rate limit backend name."""
        v = v.strip().lower()
        if v not in RATE_LIMIT_BACKENDS:
            raise ValueError(
                f"rate_limit_backend must be one of {', '.join(RATE_LIMIT_BACKENDS)}"
            )
        return v

    @field_validator("rate_limit_storage_timeout")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator(
        "rate_limit_max_retries",
        "rate_limit_storage_retry_after",
        "rate_limit_violation_history",
        "db_pool_size",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate counters are at least 1."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator("admin_token")
    @classmethod
    def strip_admin_token(cls, v: str) -> str:
        # Normalize accidental whitespace/newline from env/secret stores.
        return v.strip()

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
