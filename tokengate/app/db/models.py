from datetime import datetime, timezone

from sqlalchemy import DateTime, Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from tokengate.app.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RateLimitBucket(Base):
    """Token bucket state per (subject, resource).

    ``version`` is bumped on every write; updates are conditional on it.
    """

    __tablename__ = "rate_limit_buckets"
    __table_args__ = (
        UniqueConstraint("subject", "resource", name="uq_rate_limit_buckets_subject_resource"),
        Index("idx_rate_limit_buckets_updated", "updated_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    resource: Mapped[str] = mapped_column(String(255), nullable=False)
    tokens_remaining: Mapped[float] = mapped_column(Float, nullable=False)
    last_refill_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<RateLimitBucket(subject={self.subject!r}, resource={self.resource!r}, "
            f"tokens={self.tokens_remaining}, version={self.version})>"
        )


class RateLimitViolation(Base):
    """Append-only log of denied requests."""

    __tablename__ = "rate_limit_violations"
    __table_args__ = (
        Index("idx_violations_subject", "subject", "violated_at"),
        Index("idx_violations_resource", "resource", "violated_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    resource: Mapped[str] = mapped_column(String(255), nullable=False)
    tokens_requested: Mapped[float] = mapped_column(Float, nullable=False)
    tokens_available: Mapped[float] = mapped_column(Float, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    violated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
