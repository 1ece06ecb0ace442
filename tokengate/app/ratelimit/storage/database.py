"""SQL database bucket store (PostgreSQL / SQLite via SQLAlchemy async).

Concurrency control:
- New buckets are created with an INSERT guarded by the (subject, resource)
  unique constraint; losing the race surfaces as IntegrityError.
- Existing buckets are updated with ``UPDATE ... WHERE version = :expected``;
  zero affected rows means another request wrote first.

Reads and writes use separate short sessions so no transaction holds a
lock while the limiter computes.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tokengate.app.core.logging import get_logger
from tokengate.app.db import crud
from tokengate.app.db.async_session import get_async_session_maker
from tokengate.app.exceptions import StorageUnavailableError
from tokengate.app.ratelimit.bucket import BucketState
from tokengate.app.ratelimit.storage.base import BucketStore, StoredBucket, ViolationRecord

logger = get_logger(__name__)

# Driver-level connection failures (e.g. refused sockets) are not always wrapped
DB_EXCEPTIONS = (SQLAlchemyError, OSError)


class DatabaseBucketStore(BucketStore):
    """Bucket store backed by the ``rate_limit_buckets`` table."""

    name = "database"

    def __init__(self, session_maker: Optional[async_sessionmaker[AsyncSession]] = None) -> None:
        self._session_maker = session_maker

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_maker is None:
            self._session_maker = get_async_session_maker()
        return self._session_maker

    def _unavailable(self, operation: str, error: Exception) -> StorageUnavailableError:
        logger.error(f"Database {operation} failed: {error}")
        return StorageUnavailableError(
            f"Database {operation} failed: {type(error).__name__}", backend=self.name
        )

    async def load(self, subject: str, resource: str) -> Optional[StoredBucket]:
        try:
            async with self._sessions()() as session:
                row = await crud.get_bucket(session, subject, resource)
                if row is None:
                    return None
                return StoredBucket(
                    state=BucketState(
                        tokens_remaining=float(row.tokens_remaining),
                        last_refill_at=crud.as_utc(row.last_refill_at),
                    ),
                    version=row.version,
                )
        except DB_EXCEPTIONS as e:
            raise self._unavailable("load", e) from e

    async def compare_and_set(
        self,
        subject: str,
        resource: str,
        expected_version: Optional[int],
        state: BucketState,
    ) -> bool:
        try:
            async with self._sessions()() as session:
                if expected_version is None:
                    try:
                        await crud.insert_bucket(
                            session,
                            subject,
                            resource,
                            state.tokens_remaining,
                            state.last_refill_at,
                        )
                    except IntegrityError:
                        await session.rollback()
                        return False
                    return True
                return await crud.update_bucket_if_version(
                    session,
                    subject,
                    resource,
                    expected_version,
                    state.tokens_remaining,
                    state.last_refill_at,
                )
        except DB_EXCEPTIONS as e:
            raise self._unavailable("compare_and_set", e) from e

    async def delete(self, subject: str, resource: Optional[str] = None) -> int:
        try:
            async with self._sessions()() as session:
                return await crud.delete_buckets(session, subject, resource)
        except DB_EXCEPTIONS as e:
            raise self._unavailable("delete", e) from e

    async def append_violation(self, record: ViolationRecord) -> None:
        try:
            async with self._sessions()() as session:
                await crud.create_violation(
                    session,
                    subject=record.subject,
                    resource=record.resource,
                    tokens_requested=record.tokens_requested,
                    tokens_available=record.tokens_available,
                    violated_at=record.violated_at,
                    ip_address=record.ip_address,
                    user_agent=record.user_agent,
                )
        except DB_EXCEPTIONS as e:
            raise self._unavailable("append_violation", e) from e

    async def list_violations(self, subject: str, limit: int) -> List[ViolationRecord]:
        try:
            async with self._sessions()() as session:
                rows = await crud.get_violations_by_subject(session, subject, limit)
        except DB_EXCEPTIONS as e:
            raise self._unavailable("list_violations", e) from e
        return [
            ViolationRecord(
                subject=row.subject,
                resource=row.resource,
                tokens_requested=row.tokens_requested,
                tokens_available=row.tokens_available,
                violated_at=crud.as_utc(row.violated_at),
                ip_address=row.ip_address,
                user_agent=row.user_agent,
            )
            for row in rows
        ]

    async def purge_violations(self, older_than: datetime) -> int:
        try:
            async with self._sessions()() as session:
                return await crud.delete_violations_before(session, older_than)
        except DB_EXCEPTIONS as e:
            raise self._unavailable("purge_violations", e) from e

    async def ping(self) -> bool:
        try:
            async with self._sessions()() as session:
                result = await session.execute(text("SELECT 1"))
                return result.scalar() == 1
        except DB_EXCEPTIONS as e:
            logger.warning(f"Database ping failed: {e}")
            return False
