"""Custom exceptions for the tokengate application."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tokengate.app.ratelimit.limiter import RateLimitCheckResult


class TokenGateException(Exception):
    """Base class for tokengate exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Rate limiter error"):
        self.message = message
        super().__init__(message)


class PolicyConfigurationError(TokenGateException, ValueError):
    """Raised when a bucket configuration or policy entry is invalid.

    Covers non-positive capacity / refill rate / cost and a per-request
    cost that exceeds the bucket capacity. Raised at construction or
    startup validation time so the process refuses to start.
    """
    status_code = 500


class StorageUnavailableError(TokenGateException):
    """Raised when the bucket store cannot be reached or fails.

    Inside a rate limit check this is converted into the configured
    fail-open / fail-closed decision. Maps to HTTP 503 elsewhere.
    """
    status_code = 503

    def __init__(self, message: str = "Rate limit storage unavailable", backend: str | None = None):
        self.backend = backend
        super().__init__(message)


class RateLimitExceededError(TokenGateException):
    """Raised by the HTTP gate when a request is denied.

    Carries the check result so the exception handler can render the
    retry metadata. Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, result: "RateLimitCheckResult", resource: str | None = None):
        self.result = result
        self.resource = resource
        super().__init__("Rate limit exceeded. Please try again later.")


class AuthenticationError(TokenGateException):
    """Raised when no caller identity could be resolved.

    Maps to HTTP 401 Unauthorized.
    """
    status_code = 401

    def __init__(self, detail: str = "Authentication required for rate limiting"):
        self.detail = detail
        super().__init__(detail)
