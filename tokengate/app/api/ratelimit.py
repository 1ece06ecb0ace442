"""Caller-facing rate limit endpoints."""

from fastapi import APIRouter, Depends, Query

from tokengate.app.middleware.auth import require_subject
from tokengate.app.ratelimit.limiter import RateLimiterService, get_rate_limiter

router = APIRouter()


@router.get("/v1/rate-limit/status")
async def get_rate_limit_status(
    resource: str = Query(..., min_length=1, max_length=255),
    subject: str = Depends(require_subject),
    limiter: RateLimiterService = Depends(get_rate_limiter),
) -> dict:
    """Report the caller's bucket for a resource without consuming tokens."""
    status = await limiter.get_status(subject, resource)
    return {"resource": resource, **status.to_dict()}
