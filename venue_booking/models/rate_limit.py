"""
Fixed-window rate limit counters.
"""

from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, UTCDateTime


class RateLimitBucket(Base):
    """Request count for one (identity, operation class, window) key."""

    __tablename__ = "rate_limit_buckets"

    identity: Mapped[str] = mapped_column(String(255), primary_key=True)
    operation_class: Mapped[str] = mapped_column(String(64), primary_key=True)
    # Epoch seconds, aligned to the window length
    window_start: Mapped[int] = mapped_column(BigInteger, primary_key=True)

    count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        CheckConstraint("count >= 0", name="ck_rate_limit_buckets_count_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"<RateLimitBucket({self.identity}, {self.operation_class}, "
            f"window_start={self.window_start}, count={self.count})>"
        )
