"""
Fixed-window request counter backed by the primary store.

The count for one (identity, operation class, window) key can never pass
the limit: the increment is a conditional update that only matches while
``count < limit``, and bucket creation falls back to that same update when
a racing caller created the bucket first.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..config import get_settings
from ..models.rate_limit import RateLimitBucket
from ..unit_of_work import Transaction, UnitOfWork
from ..utils.exceptions import ConcurrencyError, StoreError
from ..utils.logging_config import log_security_event
from ..utils.metrics import (
    RATE_LIMIT_BYPASSES,
    RATE_LIMIT_HITS,
    MetricsRegistry,
    metrics as default_metrics,
)
from ..utils.timezone import utc_now

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime
    limit: int
    bypassed: bool = False

    @property
    def retry_after(self) -> int:
        return max(1, int((self.reset_at - utc_now()).total_seconds()))


class RateLimiter:
    """Atomic check-and-increment over fixed time windows."""

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
        fail_open: Optional[bool] = None,
        purge_after_windows: Optional[int] = None,
        metrics: Optional[MetricsRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        settings = get_settings()
        self.unit_of_work = unit_of_work
        self.limit = settings.rate_limit if limit is None else limit
        self.window_seconds = settings.rate_limit_window_seconds if window_seconds is None else window_seconds
        self.fail_open = settings.rate_limit_fail_open if fail_open is None else fail_open
        self.purge_after_windows = (
            settings.rate_limit_purge_after_windows if purge_after_windows is None
            else purge_after_windows
        )
        self.metrics = metrics or default_metrics
        self._clock = clock or utc_now

    def window_start(self, now: datetime) -> int:
        epoch = int(now.timestamp())
        return (epoch // self.window_seconds) * self.window_seconds

    async def check_and_increment(
        self, identity: str, operation_class: str, now: Optional[datetime] = None
    ) -> RateLimitResult:
        """
        Count one request against ``identity`` for ``operation_class``.

        Returns:
            RateLimitResult with ``allowed`` False once the window is full.
            A store failure yields an allowed, ``bypassed`` result when the
            limiter is configured to fail open.

        Raises:
            StoreError: The store failed and the limiter fails closed.
        """
        now = now or self._clock()
        window_start = self.window_start(now)
        reset_at = datetime.fromtimestamp(window_start + self.window_seconds, tz=timezone.utc)

        if self.limit < 1:
            return self._denied(identity, operation_class, reset_at)

        async def _increment(tx: Transaction) -> Optional[int]:
            return await self._increment(tx, identity, operation_class, window_start, now)

        try:
            count = await self.unit_of_work.run(_increment, name="rate_limit_increment")
        except (SQLAlchemyError, ConcurrencyError, OSError) as e:
            if not self.fail_open:
                raise StoreError(f"Rate limiter unavailable: {e}") from e
            self.metrics.increment(RATE_LIMIT_BYPASSES)
            logger.error(f"Rate limiter store error, allowing request: {e}")
            return RateLimitResult(
                allowed=True,
                remaining=self.limit,
                reset_at=reset_at,
                limit=self.limit,
                bypassed=True,
            )

        if count is None:
            return self._denied(identity, operation_class, reset_at)

        return RateLimitResult(
            allowed=True,
            remaining=max(0, self.limit - count),
            reset_at=reset_at,
            limit=self.limit,
        )

    async def _increment(
        self,
        tx: Transaction,
        identity: str,
        operation_class: str,
        window_start: int,
        now: datetime,
    ) -> Optional[int]:
        """Return the new count, or None when the bucket is already full."""
        session = tx.session

        count = await self._conditional_increment(tx, identity, operation_class, window_start, now)
        if count is not None:
            return count

        existing = await session.execute(
            select(RateLimitBucket.count).where(
                RateLimitBucket.identity == identity,
                RateLimitBucket.operation_class == operation_class,
                RateLimitBucket.window_start == window_start,
            )
        )
        if existing.scalar_one_or_none() is not None:
            return None

        try:
            async with session.begin_nested():
                await session.execute(
                    insert(RateLimitBucket).values(
                        identity=identity,
                        operation_class=operation_class,
                        window_start=window_start,
                        count=1,
                        updated_at=now,
                    )
                )
            return 1
        except IntegrityError:
            # Another caller created the bucket between our read and insert
            logger.debug(f"Rate limit bucket race for {operation_class}, retrying increment")
            return await self._conditional_increment(tx, identity, operation_class, window_start, now)

    async def _conditional_increment(
        self,
        tx: Transaction,
        identity: str,
        operation_class: str,
        window_start: int,
        now: datetime,
    ) -> Optional[int]:
        session = tx.session
        result = await session.execute(
            update(RateLimitBucket)
            .where(
                RateLimitBucket.identity == identity,
                RateLimitBucket.operation_class == operation_class,
                RateLimitBucket.window_start == window_start,
                RateLimitBucket.count < self.limit,
            )
            .values(count=RateLimitBucket.count + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None

        count = await session.execute(
            select(RateLimitBucket.count).where(
                RateLimitBucket.identity == identity,
                RateLimitBucket.operation_class == operation_class,
                RateLimitBucket.window_start == window_start,
            )
        )
        return count.scalar_one()

    def _denied(self, identity: str, operation_class: str, reset_at: datetime) -> RateLimitResult:
        self.metrics.increment(RATE_LIMIT_HITS)
        log_security_event(
            "rate_limit_exceeded",
            {"identity": identity, "operation_class": operation_class, "limit": self.limit},
        )
        return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at, limit=self.limit)

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete buckets whose window started more than ``purge_after_windows`` windows ago."""
        now = now or self._clock()
        cutoff = self.window_start(now) - self.purge_after_windows * self.window_seconds

        async def _purge(tx: Transaction) -> int:
            result = await tx.session.execute(
                delete(RateLimitBucket)
                .where(RateLimitBucket.window_start < cutoff)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

        try:
            deleted = await self.unit_of_work.run(_purge, name="rate_limit_purge")
        except Exception as e:
            logger.error(f"Failed to purge rate limit buckets: {e}")
            return 0

        if deleted:
            logger.info(f"Purged {deleted} expired rate limit buckets")
        return deleted
