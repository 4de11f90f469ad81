"""
Transactional unit of work with a hard timeout and lock-contention retry.

A unit of work runs one block of store operations inside a single
transaction. Either everything the block wrote is committed, or the
transaction is rolled back exactly once and nothing is observable.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .database import acquire_calendar_lock
from .utils.exceptions import LockTimeoutError, TransactionTimeoutError, is_lock_contention
from .utils.metrics import (
    LOCK_CONFLICTS,
    LOCK_RETRIES,
    TRANSACTION_FAILURES,
    TRANSACTION_TIMEOUTS,
    MetricsRegistry,
    metrics as default_metrics,
)
from .utils.retry import RetryConfig, retry_async

logger = logging.getLogger(__name__)

T = TypeVar("T")

AfterCommitHook = Callable[[], Awaitable[None]]


class Transaction:
    """Handle passed to a unit-of-work block."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self._after_commit: List[AfterCommitHook] = []

    def after_commit(self, hook: AfterCommitHook) -> None:
        """Schedule a side effect to run only once the transaction has committed."""
        self._after_commit.append(hook)

    async def lock_calendar(self) -> None:
        await acquire_calendar_lock(self.session)

    async def run_after_commit_hooks(self) -> None:
        for hook in self._after_commit:
            try:
                await hook()
            except Exception as e:
                logger.warning(f"After-commit hook {getattr(hook, '__name__', hook)} failed: {e}")


class UnitOfWork:
    """
    Runs blocks of store operations atomically.

    Usage:
        uow = UnitOfWork(db.session_factory)
        booking = await uow.run(lambda tx: load_and_update(tx.session))
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        timeout: Optional[float] = None,
        max_lock_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        metrics: Optional[MetricsRegistry] = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.timeout = timeout if timeout is not None else settings.unit_of_work_timeout_seconds
        self.max_lock_retries = (
            max_lock_retries if max_lock_retries is not None
            else settings.unit_of_work_max_lock_retries
        )
        self.retry_base_delay = (
            retry_base_delay if retry_base_delay is not None
            else settings.unit_of_work_retry_base_delay
        )
        self.metrics = metrics or default_metrics

    async def run(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        timeout: Optional[float] = None,
        max_lock_retries: Optional[int] = None,
        name: Optional[str] = None,
    ) -> T:
        """
        Execute ``fn`` in a transaction and commit.

        Lock contention is retried up to ``max_lock_retries`` times with
        exponential backoff. A timeout is never retried.

        Raises:
            TransactionTimeoutError: The block did not finish in time.
            LockTimeoutError: The store stayed locked through every retry.
            Exception: Any other error raised by ``fn`` or the store, unchanged.
        """
        timeout = self.timeout if timeout is None else timeout
        retries = self.max_lock_retries if max_lock_retries is None else max_lock_retries
        operation_name = name or getattr(fn, "__name__", "unit_of_work")

        config = RetryConfig(
            max_attempts=retries + 1,
            base_delay=self.retry_base_delay,
            max_delay=max(self.retry_base_delay * 2 ** retries, self.retry_base_delay),
        )

        def _should_retry(error: BaseException) -> bool:
            if is_lock_contention(error):
                self.metrics.increment(LOCK_CONFLICTS)
                return True
            return False

        def _on_retry(attempt: int, error: BaseException) -> None:
            self.metrics.increment(LOCK_RETRIES)

        try:
            return await retry_async(
                lambda: self._attempt(fn, timeout),
                config,
                should_retry=_should_retry,
                on_retry=_on_retry,
                operation_name=operation_name,
            )
        except TransactionTimeoutError:
            self.metrics.increment(TRANSACTION_FAILURES)
            raise
        except Exception as e:
            self.metrics.increment(TRANSACTION_FAILURES)
            if is_lock_contention(e):
                raise LockTimeoutError(attempts=retries + 1) from e
            raise

    async def _attempt(self, fn: Callable[[Transaction], Awaitable[T]], timeout: float) -> T:
        session = self.session_factory()
        tx = Transaction(session)
        rolled_back = False

        async def rollback_once() -> None:
            nonlocal rolled_back
            if rolled_back:
                return
            rolled_back = True
            try:
                await session.rollback()
            except Exception as e:
                logger.warning(f"Rollback failed: {e}")

        async def body() -> T:
            result = await fn(tx)
            await session.commit()
            return result

        try:
            try:
                result = await asyncio.wait_for(body(), timeout=timeout)
            except asyncio.TimeoutError:
                await rollback_once()
                self.metrics.increment(TRANSACTION_TIMEOUTS)
                logger.error(f"Unit of work timed out after {timeout}s and was rolled back")
                raise TransactionTimeoutError(timeout) from None
            except BaseException:
                await rollback_once()
                raise
        finally:
            try:
                await session.close()
            except Exception as e:
                logger.warning(f"Session close failed: {e}")

        await tx.run_after_commit_hooks()
        return result
