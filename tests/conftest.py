"""
Shared fixtures: a throwaway SQLite database per test, a fast-retrying unit
of work and a lifecycle service wired to an in-memory notifier.
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from venue_booking.database import DatabaseManager
from venue_booking.models.booking import Booking, BookingStatus
from venue_booking.services.lifecycle_service import LifecycleService
from venue_booking.services.notification_service import RecordingNotifier
from venue_booking.unit_of_work import UnitOfWork
from venue_booking.utils.metrics import metrics
from venue_booking.utils.timezone import DateOracle

# Far enough ahead that no test date is ever in the past
FUTURE = "2031-05-10"


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def oracle() -> DateOracle:
    return DateOracle("Asia/Bangkok")


@pytest_asyncio.fixture
async def database(tmp_path):
    db = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'venue_booking_test.db'}")
    await db.initialize(create_tables=True)
    yield db
    await db.close()


@pytest.fixture
def unit_of_work(database) -> UnitOfWork:
    return UnitOfWork(database.session_factory, timeout=10.0, max_lock_retries=3, retry_base_delay=0.01)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(unit_of_work, oracle, notifier) -> LifecycleService:
    return LifecycleService(unit_of_work, oracle=oracle, notifier=notifier)


@pytest.fixture
def make_booking(database):
    """Insert a booking row directly, bypassing the lifecycle rules."""

    async def _make(**fields) -> Booking:
        fields.setdefault("name", "Test Guest")
        fields.setdefault("email", "guest@example.com")
        fields.setdefault("start_date", FUTURE)
        fields.setdefault("status", BookingStatus.PENDING)
        async with database.get_session() as session:
            booking = Booking(**fields)
            session.add(booking)
        return booking

    return _make


@pytest.fixture
def load_booking(database):
    async def _load(booking_id) -> Booking:
        async with database.get_session() as session:
            return await session.get(Booking, booking_id)

    return _load


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def hours_ago(hours: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=hours)
