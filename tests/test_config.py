"""Tests for application settings."""

import pytest
from pydantic import ValidationError

from tokengate.app.core.config import Settings


def test_defaults(monkeypatch) -> None:
    for name in ("RATE_LIMIT_BACKEND", "RATE_LIMIT_FAIL_CLOSED", "ADMIN_TOKEN"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings(_env_file=None)

    assert settings.rate_limit_backend == "database"
    assert settings.rate_limit_fail_closed is False
    assert settings.rate_limit_allow_anonymous is False
    assert settings.rate_limit_storage_timeout == 2.0
    assert settings.database_url.startswith("sqlite+aiosqlite")


def test_backend_is_normalized(monkeypatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_BACKEND", " Redis ")
    assert Settings(_env_file=None).rate_limit_backend == "redis"


def test_unknown_backend_rejected(monkeypatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "memcached")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_fail_closed_from_env(monkeypatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_FAIL_CLOSED", "true")
    assert Settings(_env_file=None).rate_limit_fail_closed is True


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("RATE_LIMIT_STORAGE_TIMEOUT", "0"),
        ("RATE_LIMIT_STORAGE_TIMEOUT", "-1.5"),
        ("RATE_LIMIT_MAX_RETRIES", "0"),
        ("RATE_LIMIT_STORAGE_RETRY_AFTER", "0"),
        ("RATE_LIMIT_VIOLATION_HISTORY", "-3"),
    ],
)
def test_non_positive_values_rejected(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_admin_token_trims_whitespace(monkeypatch) -> None:
    monkeypatch.setenv("ADMIN_TOKEN", "  token-with-whitespace  \n")
    assert Settings(_env_file=None).admin_token == "token-with-whitespace"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('["http://localhost:5173"]', ["http://localhost:5173"]),
        ("http://a.example, http://b.example", ["http://a.example", "http://b.example"]),
        ("*", ["*"]),
        ("[]", []),
        ("", []),
    ],
)
def test_cors_origins_parsing_variants(monkeypatch, raw: str, expected: list[str]) -> None:
    monkeypatch.setenv("CORS_ORIGINS", raw)

    settings = Settings(_env_file=None)
    assert settings.cors_origins == expected
