"""
Periodic Celery tasks: the booking status sweep and rate-limit bucket purge.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict

from celery import Task

from ..database import DatabaseManager
from ..services.lifecycle_service import LifecycleService
from ..services.notification_service import CeleryNotifier
from ..services.rate_limit_service import RateLimiter
from ..unit_of_work import UnitOfWork
from .celery_app import celery_app

logger = logging.getLogger(__name__)


class DatabaseTask(Task):
    """Base task that runs async work against a fresh database manager."""

    def run_with_database(self, work: Callable[[UnitOfWork], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        async def _run() -> Dict[str, Any]:
            database = DatabaseManager()
            await database.initialize()
            try:
                return await work(UnitOfWork(database.session_factory))
            finally:
                await database.close()

        # Engines are bound to the loop they were created on, so each run gets its own
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            return loop.run_until_complete(_run())
        finally:
            loop.close()


async def auto_update_bookings(unit_of_work: UnitOfWork) -> Dict[str, Any]:
    service = LifecycleService(unit_of_work, notifier=CeleryNotifier())
    result = await service.auto_update()
    logger.info(
        f"Booking sweep finished: {result.cancelled} cancelled, "
        f"{result.finished} finished, {result.failed} failed"
    )
    return {
        "cancelled": result.cancelled,
        "finished": result.finished,
        "failed": result.failed,
        "updated": result.updated,
    }


async def purge_rate_limit_buckets(unit_of_work: UnitOfWork) -> Dict[str, Any]:
    deleted = await RateLimiter(unit_of_work).purge_expired()
    return {"deleted": deleted}


@celery_app.task(bind=True, base=DatabaseTask, name="auto_update_bookings_task")
def auto_update_bookings_task(self):
    """
    Cancel open bookings whose start has passed and finish confirmed
    bookings whose end has passed.
    """
    logger.info("Starting booking status sweep")
    return self.run_with_database(auto_update_bookings)


@celery_app.task(bind=True, base=DatabaseTask, name="purge_rate_limit_buckets_task")
def purge_rate_limit_buckets_task(self):
    """Delete rate-limit buckets from windows that have long passed."""
    return self.run_with_database(purge_rate_limit_buckets)
