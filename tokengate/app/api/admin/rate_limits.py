"""Admin endpoints for inspecting and resetting rate limits."""

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from tokengate.app.ratelimit.bucket import utcnow
from tokengate.app.ratelimit.limiter import RateLimiterService, get_rate_limiter

router = APIRouter()


class ResetRequest(BaseModel):
    resource: Optional[str] = Field(default=None, min_length=1, max_length=255)


@router.get("/policies")
async def list_policies(
    limiter: RateLimiterService = Depends(get_rate_limiter),
) -> dict:
    """List the configured policy table."""
    return limiter.policies.describe()


@router.delete("/violations")
async def purge_violations(
    older_than_days: int = Query(default=30, ge=1),
    limiter: RateLimiterService = Depends(get_rate_limiter),
) -> dict:
    """Delete violation records older than ``older_than_days``."""
    cutoff = utcnow() - timedelta(days=older_than_days)
    removed = await limiter.purge_violations(cutoff)
    return {"removed": removed, "older_than": cutoff.isoformat()}


@router.get("/{subject}/status")
async def get_subject_status(
    subject: str,
    resource: str = Query(..., min_length=1, max_length=255),
    limiter: RateLimiterService = Depends(get_rate_limiter),
) -> dict:
    """Non-consuming bucket status for any subject."""
    status = await limiter.get_status(subject, resource)
    return {"subject": subject, "resource": resource, **status.to_dict()}


@router.post("/{subject}/reset")
async def reset_subject(
    subject: str,
    data: Optional[ResetRequest] = None,
    limiter: RateLimiterService = Depends(get_rate_limiter),
) -> dict:
    """Reset one bucket, or every bucket of the subject when no resource is given."""
    resource = data.resource if data else None
    removed = await limiter.reset(subject, resource)
    return {"subject": subject, "resource": resource, "removed": removed}


@router.get("/{subject}/violations")
async def list_violations(
    subject: str,
    limit: int = Query(default=10, ge=1, le=1000),
    limiter: RateLimiterService = Depends(get_rate_limiter),
) -> list[dict]:
    """Most recent violations for a subject."""
    violations = await limiter.get_violations(subject, limit)
    return [record.to_dict() for record in violations]
