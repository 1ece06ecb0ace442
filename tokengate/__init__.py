"""tokengate: token-bucket rate limiting for multi-tenant APIs."""

__version__ = "0.1.0"
