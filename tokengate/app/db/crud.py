"""Async CRUD operations for rate limit tables.

Every function takes an open session and commits its own write, so each
bucket update is a single short transaction.
"""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tokengate.app.db.models import RateLimitBucket, RateLimitViolation


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime read back from the database to aware UTC.

    SQLite drops tzinfo on ``DateTime(timezone=True)`` columns.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Bucket Operations
# =============================================================================

async def get_bucket(
    session: AsyncSession, subject: str, resource: str
) -> Optional[RateLimitBucket]:
    """Get the bucket row for (subject, resource), or None."""
    result = await session.execute(
        select(RateLimitBucket).where(
            RateLimitBucket.subject == subject,
            RateLimitBucket.resource == resource,
        )
    )
    return result.scalar_one_or_none()


async def insert_bucket(
    session: AsyncSession,
    subject: str,
    resource: str,
    tokens_remaining: float,
    last_refill_at: datetime,
) -> None:
    """Insert a new bucket at version 1.

    Raises:
        IntegrityError: If a concurrent request already created the bucket.
    """
    now = datetime.now(timezone.utc)
    await session.execute(
        insert(RateLimitBucket).values(
            subject=subject,
            resource=resource,
            tokens_remaining=tokens_remaining,
            last_refill_at=last_refill_at,
            version=1,
            created_at=now,
            updated_at=now,
        )
    )
    await session.commit()


async def update_bucket_if_version(
    session: AsyncSession,
    subject: str,
    resource: str,
    expected_version: int,
    tokens_remaining: float,
    last_refill_at: datetime,
) -> bool:
    """Conditionally update a bucket.

    A single ``UPDATE ... WHERE version = :expected`` statement, so the
    check and the write are atomic in the database.

    Returns:
        True if the row was updated, False if the version moved on.
    """
    result = await session.execute(
        update(RateLimitBucket)
        .where(
            RateLimitBucket.subject == subject,
            RateLimitBucket.resource == resource,
            RateLimitBucket.version == expected_version,
        )
        .values(
            tokens_remaining=tokens_remaining,
            last_refill_at=last_refill_at,
            version=expected_version + 1,
            updated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def delete_buckets(
    session: AsyncSession, subject: str, resource: Optional[str] = None
) -> int:
    """Delete one bucket or all buckets of a subject."""
    stmt = delete(RateLimitBucket).where(RateLimitBucket.subject == subject)
    if resource is not None:
        stmt = stmt.where(RateLimitBucket.resource == resource)
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount or 0


# =============================================================================
# Violation Operations
# =============================================================================

async def create_violation(
    session: AsyncSession,
    subject: str,
    resource: str,
    tokens_requested: float,
    tokens_available: float,
    violated_at: datetime,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> RateLimitViolation:
    """Insert a violation record."""
    violation = RateLimitViolation(
        subject=subject,
        resource=resource,
        tokens_requested=tokens_requested,
        tokens_available=tokens_available,
        violated_at=violated_at,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    session.add(violation)
    await session.commit()
    return violation


async def get_violations_by_subject(
    session: AsyncSession, subject: str, limit: int = 10
) -> List[RateLimitViolation]:
    """Get a subject's violations, most recent first."""
    result = await session.execute(
        select(RateLimitViolation)
        .where(RateLimitViolation.subject == subject)
        .order_by(RateLimitViolation.violated_at.desc(), RateLimitViolation.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def delete_violations_before(session: AsyncSession, cutoff: datetime) -> int:
    """Delete violations recorded before ``cutoff``."""
    result = await session.execute(
        delete(RateLimitViolation).where(RateLimitViolation.violated_at < cutoff)
    )
    await session.commit()
    return result.rowcount or 0
