"""
Calendar overlap engine for the single shared venue.

Bookings are turned into canonical intervals once, at the store boundary,
and every comparison afterwards works on aware UTC instants.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.booking import Booking, BookingStatus
from ..utils.exceptions import CalendarDateError, ValidationError
from ..utils.timezone import DateOracle
from .status_machine import OCCUPYING_STATUSES, RENEGOTIATION_STATUSES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Interval:
    """
    Half-open ``[start, end)`` span of time.

    A zero-length interval is a point: it conflicts with a span that
    contains it and with an identical point.
    """
    start: datetime
    end: datetime

    @property
    def is_point(self) -> bool:
        return self.start == self.end

    def overlaps(self, other: "Interval") -> bool:
        if self.is_point and other.is_point:
            return self.start == other.start
        if self.is_point:
            return other.start <= self.start < other.end
        if other.is_point:
            return self.start <= other.start < self.end
        return self.start < other.end and other.start < self.end


@dataclass(frozen=True)
class BookingInterval:
    """A blocking booking with the interval it occupies."""
    booking_id: UUID
    status: BookingStatus
    interval: Interval
    start_date: str
    end_date: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    name: Optional[str] = None
    # True when stored times were unreadable and whole days are blocked
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "booking_id": str(self.booking_id),
            "status": self.status.value,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "start": self.interval.start.isoformat(),
            "end": self.interval.end.isoformat(),
        }


@dataclass
class OverlapResult:
    overlaps: bool
    matches: List[BookingInterval] = field(default_factory=list)


@dataclass
class UnavailableDates:
    dates: List[str]
    ranges: List[Dict[str, Any]]


def build_interval(
    oracle: DateOracle,
    start_date: str,
    end_date: Optional[str] = None,
    start_time: Optional[str] = None,
    end_time: Optional[str] = None,
) -> Interval:
    """
    Derive the canonical interval for a set of stored date/time fields.

    A booking without an end date (or ending on its start date) is single
    day: it ends at its end time, else its start time, else start of day.
    A multi-day booking ends at ``end_date`` combined with ``end_time``.

    Raises:
        CalendarDateError: A date does not exist.
        ValidationError: A time of day is malformed, or the end precedes the start.
    """
    start = oracle.to_instant(start_date, start_time)

    if end_date and oracle.parse_date(end_date) != oracle.parse_date(start_date):
        end = oracle.to_instant(end_date, end_time)
    else:
        end = oracle.to_instant(start_date, end_time or start_time)

    if end < start:
        raise ValidationError(
            "Booking end is before its start",
            field_errors={"end": [f"{end.isoformat()} is before {start.isoformat()}"]},
        )
    return Interval(start=start, end=end)


def whole_day_interval(oracle: DateOracle, start_date: str, end_date: Optional[str] = None) -> Interval:
    last_day = end_date or start_date
    return Interval(
        start=oracle.start_of_day(start_date),
        end=oracle.start_of_day(last_day) + timedelta(days=1),
    )


def canonical_fields(booking: Booking) -> Tuple[str, Optional[str], Optional[str], Optional[str]]:
    """
    Date/time fields that define the interval a booking occupies.

    A proposed interval never blocks; the canonical one keeps blocking until
    the proposal is accepted and promoted.
    """
    return booking.start_date, booking.end_date, booking.start_time, booking.end_time


def blocks_in(status: BookingStatus, deposit_verified_at: Optional[datetime]) -> bool:
    """Whether a booking in ``status`` with this verification stamp occupies calendar time."""
    if status in OCCUPYING_STATUSES:
        return True
    return status in RENEGOTIATION_STATUSES and deposit_verified_at is not None


def is_blocking(booking: Booking) -> bool:
    """Whether a booking currently occupies calendar time."""
    return blocks_in(booking.status, booking.deposit_verified_at)


def blocking_clause():
    return or_(
        Booking.status.in_(list(OCCUPYING_STATUSES)),
        and_(
            Booking.status.in_(list(RENEGOTIATION_STATUSES)),
            Booking.deposit_verified_at.is_not(None),
        ),
    )


class OverlapEngine:
    """Answers calendar questions against the bookings that occupy the venue."""

    def __init__(self, session: AsyncSession, oracle: Optional[DateOracle] = None):
        self.session = session
        self.oracle = oracle or DateOracle()

    def to_booking_interval(self, booking: Booking) -> Optional[BookingInterval]:
        """
        Build the interval a stored booking occupies.

        Unreadable times degrade to whole-day granularity. A booking whose
        dates cannot be read at all is skipped with a warning.
        """
        start_date, end_date, start_time, end_time = canonical_fields(booking)
        degraded = False
        try:
            interval = build_interval(self.oracle, start_date, end_date, start_time, end_time)
        except CalendarDateError as e:
            logger.warning(f"Skipping booking {booking.id} with unreadable dates: {e.message}")
            return None
        except ValidationError as e:
            logger.warning(f"Booking {booking.id} has unreadable times, blocking whole days: {e.message}")
            interval = whole_day_interval(self.oracle, start_date, end_date)
            degraded = True

        return BookingInterval(
            booking_id=booking.id,
            status=booking.status,
            interval=interval,
            start_date=self.oracle.parse_date(start_date).isoformat(),
            end_date=self.oracle.parse_date(end_date or start_date).isoformat(),
            start_time=start_time,
            end_time=end_time,
            name=booking.name,
            degraded=degraded,
        )

    async def blocking_bookings(
        self,
        exclude_id: Optional[UUID] = None,
        first_day: Optional[str] = None,
        last_day: Optional[str] = None,
    ) -> List[Booking]:
        """Load bookings that occupy the calendar, optionally limited to a day range."""
        query = select(Booking).where(blocking_clause())

        if exclude_id is not None:
            query = query.where(Booking.id != exclude_id)
        if last_day is not None:
            query = query.where(Booking.start_date <= last_day)
        if first_day is not None:
            query = query.where(func.coalesce(Booking.end_date, Booking.start_date) >= first_day)

        result = await self.session.execute(query.order_by(Booking.start_date))
        return list(result.scalars().all())

    async def blocking_intervals(self, exclude_id: Optional[UUID] = None) -> List[BookingInterval]:
        intervals = []
        for booking in await self.blocking_bookings(exclude_id):
            booking_interval = self.to_booking_interval(booking)
            if booking_interval is not None:
                intervals.append(booking_interval)
        return intervals

    async def conflicts(self, candidate: Interval, exclude_id: Optional[UUID] = None) -> OverlapResult:
        """
        Report every blocking booking whose interval overlaps ``candidate``.

        Two intervals ``[s1, e1)`` and ``[s2, e2)`` conflict iff
        ``s1 < e2 and s2 < e1``; touching endpoints do not conflict.
        """
        first_day = self.oracle.to_day_string(candidate.start)
        last_day = self.oracle.to_day_string(candidate.end)

        matches = []
        for booking in await self.blocking_bookings(exclude_id, first_day, last_day):
            booking_interval = self.to_booking_interval(booking)
            if booking_interval is not None and booking_interval.interval.overlaps(candidate):
                matches.append(booking_interval)

        return OverlapResult(overlaps=bool(matches), matches=matches)

    async def conflicts_for_fields(
        self,
        start_date: str,
        end_date: Optional[str] = None,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
        exclude_id: Optional[UUID] = None,
    ) -> OverlapResult:
        candidate = build_interval(self.oracle, start_date, end_date, start_time, end_time)
        return await self.conflicts(candidate, exclude_id)

    async def unavailable_dates(self, exclude_id: Optional[UUID] = None) -> UnavailableDates:
        """
        Project blocking bookings onto whole business-zone calendar days.

        Each booking contributes every day from its start date to its end
        date inclusive, plus its raw time range for display.
        """
        days = set()
        ranges = []

        for booking_interval in await self.blocking_intervals(exclude_id):
            day = booking_interval.start_date
            while day <= booking_interval.end_date:
                days.add(day)
                day = self.oracle.add_days(day, 1)
            ranges.append(booking_interval.to_dict())

        return UnavailableDates(dates=sorted(days), ranges=ranges)
