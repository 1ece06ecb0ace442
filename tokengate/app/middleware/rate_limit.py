"""Rate limit gate for FastAPI routes.

Rate limits are applied per caller subject and per resource (the request
path unless a route names its own resource):

    @router.post("/api/ai/generate", dependencies=[Depends(RateLimitGuard())])
    async def generate(...): ...

Denied requests raise ``RateLimitExceededError``, rendered as a 429 by the
exception handler in ``main``. Admitted requests get ``X-RateLimit-*``
headers from ``RateLimitHeadersMiddleware``.
"""

from typing import Dict, Optional

from fastapi import Depends, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from tokengate.app.core.config import settings
from tokengate.app.core.logging import get_log_context, get_logger
from tokengate.app.exceptions import AuthenticationError, RateLimitExceededError
from tokengate.app.middleware.auth import resolve_subject
from tokengate.app.ratelimit.limiter import (
    RateLimitCheckResult,
    RateLimiterService,
    get_rate_limiter,
)

logger = get_logger(__name__)

# Matches the ip_address column width
MAX_IP_LENGTH = 64


def get_client_ip(request: Request) -> Optional[str]:
    """Client address, preferring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        client_ip = forwarded.split(",")[0].strip()
    else:
        client_ip = request.client.host if request.client else None
    return client_ip[:MAX_IP_LENGTH] if client_ip else None


def get_request_metadata(request: Request) -> Dict[str, Optional[str]]:
    return {
        "ip_address": get_client_ip(request),
        "user_agent": request.headers.get("User-Agent"),
    }


class RateLimitGuard:
    """FastAPI dependency enforcing the token bucket for one route.

    Args:
        resource: Resource identifier (defaults to the request path)
        cost: Tokens per request, overriding the policy's cost rules
    """

    def __init__(self, resource: Optional[str] = None, cost: Optional[float] = None):
        self.resource = resource
        self.cost = cost

    async def __call__(
        self,
        request: Request,
        limiter: RateLimiterService = Depends(get_rate_limiter),
    ) -> Optional[RateLimitCheckResult]:
        subject = resolve_subject(request)
        if subject is None:
            if settings.rate_limit_allow_anonymous:
                logger.debug(
                    "Rate limiting skipped for anonymous caller",
                    extra=get_log_context(
                        request_id=getattr(request.state, "request_id", None),
                        path=request.url.path,
                        outcome="skipped",
                    ),
                )
                return None
            raise AuthenticationError()

        resource = self.resource or request.url.path
        result = await limiter.check_rate_limit(
            subject,
            resource,
            metadata=get_request_metadata(request),
            cost_override=self.cost,
        )
        request.state.rate_limit_result = result

        if not result.allowed:
            raise RateLimitExceededError(result, resource=resource)
        return result


class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    """Attach ``X-RateLimit-*`` headers to responses of rate limited routes."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)

        result: Optional[RateLimitCheckResult] = getattr(
            request.state, "rate_limit_result", None
        )
        # Denials already carry their headers from the 429 handler
        if result is not None and result.allowed:
            for name, value in result.to_headers().items():
                response.headers.setdefault(name, value)
        return response
