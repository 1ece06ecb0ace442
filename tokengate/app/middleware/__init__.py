"""Middleware package for tokengate."""

from tokengate.app.middleware.auth import require_admin, require_subject, resolve_subject
from tokengate.app.middleware.rate_limit import RateLimitGuard, RateLimitHeadersMiddleware
from tokengate.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "require_admin",
    "require_subject",
    "resolve_subject",
    "RateLimitGuard",
    "RateLimitHeadersMiddleware",
    "RequestIdMiddleware",
    "get_request_id",
]
