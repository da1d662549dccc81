"""
Module: inventory_kernel.models.rate_limit
Responsibility: ORM persistence for per-(provider, bucket) token buckets and
    their circuit breaker state.
Architecture position: Kernel > Models. May import from db/base.py only.

Invariants enforced:
    - One row per (provider, bucket).
    - 0 <= remaining <= capacity.
    - Each row is read-modify-written under a row lock in its own short
      transaction; no transaction spans a bucket and another table.
"""

from datetime import datetime

from sqlalchemy import Boolean, Float, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from inventory_kernel.db.base import Base, UTCDateTime


class RateLimitRecord(Base):
    """Fixed-window token bucket."""

    __tablename__ = "rate_limit_buckets"

    __table_args__ = (
        UniqueConstraint("provider", "bucket", name="uq_rate_limit_provider_bucket"),
    )

    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    bucket: Mapped[str] = mapped_column(String(100), nullable=False)

    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    window_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    reset_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    alert_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=0.8)
    alert_emitted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    circuit_open_until: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<RateLimitRecord {self.provider}/{self.bucket} "
            f"{self.remaining}/{self.capacity} reset={self.reset_at.isoformat()}>"
        )
