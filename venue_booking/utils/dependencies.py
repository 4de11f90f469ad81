"""
FastAPI dependencies wiring request handlers to the store and services.

Everything hangs off ``app.state``, populated by the application lifespan,
so tests can build an app around their own database.
"""

from fastapi import Depends, Request

from ..database import DatabaseManager
from ..services.lifecycle_service import LifecycleService
from ..services.overlap_service import OverlapEngine
from ..unit_of_work import UnitOfWork
from .timezone import DateOracle


def get_database(request: Request) -> DatabaseManager:
    """Get the database manager created at startup."""
    return request.app.state.database


def get_oracle(request: Request) -> DateOracle:
    return request.app.state.oracle


def get_unit_of_work(database: DatabaseManager = Depends(get_database)) -> UnitOfWork:
    """A unit of work bound to the application's session factory."""
    if database.session_factory is None:
        raise RuntimeError("Database not initialized")
    return UnitOfWork(database.session_factory)


def get_lifecycle_service(
    request: Request,
    unit_of_work: UnitOfWork = Depends(get_unit_of_work),
    oracle: DateOracle = Depends(get_oracle),
) -> LifecycleService:
    return LifecycleService(unit_of_work, oracle=oracle, notifier=request.app.state.notifier)


class AvailabilityReader:
    """Runs overlap engine reads inside a unit of work."""

    def __init__(self, unit_of_work: UnitOfWork, oracle: DateOracle):
        self.unit_of_work = unit_of_work
        self.oracle = oracle

    async def unavailable_dates(self, exclude_id=None):
        async def _read(tx):
            return await OverlapEngine(tx.session, self.oracle).unavailable_dates(exclude_id)

        return await self.unit_of_work.run(_read, name="unavailable_dates")


def get_availability_reader(
    unit_of_work: UnitOfWork = Depends(get_unit_of_work),
    oracle: DateOracle = Depends(get_oracle),
) -> AvailabilityReader:
    return AvailabilityReader(unit_of_work, oracle)
