"""Tests for canonical intervals and calendar conflict detection."""

import pytest

from venue_booking.models.booking import Booking, BookingStatus
from venue_booking.services.overlap_service import (
    Interval,
    OverlapEngine,
    build_interval,
    is_blocking,
)
from venue_booking.utils.exceptions import CalendarDateError, ValidationError

from .conftest import hours_ago, utc

S = BookingStatus


def span(start_hour, end_hour):
    return Interval(utc(2030, 1, 1, start_hour), utc(2030, 1, 1, end_hour))


def point(hour):
    return Interval(utc(2030, 1, 1, hour), utc(2030, 1, 1, hour))


class TestInterval:
    def test_overlapping_spans(self):
        assert span(10, 12).overlaps(span(11, 13))
        assert span(11, 13).overlaps(span(10, 12))

    def test_touching_spans_do_not_overlap(self):
        assert not span(10, 12).overlaps(span(12, 14))
        assert not span(12, 14).overlaps(span(10, 12))

    def test_contained_span(self):
        assert span(8, 18).overlaps(span(10, 11))

    def test_point_inside_span(self):
        assert point(11).overlaps(span(10, 12))
        assert span(10, 12).overlaps(point(11))

    def test_point_at_span_edges(self):
        assert point(10).overlaps(span(10, 12))
        assert not point(12).overlaps(span(10, 12))

    def test_points(self):
        assert point(10).overlaps(point(10))
        assert not point(10).overlaps(point(11))


class TestBuildInterval:
    def test_single_day_with_times(self, oracle):
        interval = build_interval(oracle, "2030-03-01", None, "10:00", "14:00")
        assert interval == Interval(utc(2030, 3, 1, 3), utc(2030, 3, 1, 7))

    def test_same_end_date_is_single_day(self, oracle):
        assert build_interval(oracle, "2030-03-01", "2030-03-01", "10:00", "14:00") == \
            build_interval(oracle, "2030-03-01", None, "10:00", "14:00")

    def test_single_day_without_end_time_is_a_point(self, oracle):
        interval = build_interval(oracle, "2030-03-01", None, "10:00")
        assert interval.is_point
        assert interval.start == utc(2030, 3, 1, 3)

    def test_date_only_is_a_point_at_start_of_day(self, oracle):
        interval = build_interval(oracle, "2030-03-01")
        assert interval.is_point
        assert interval.start == utc(2030, 2, 28, 17)

    def test_multi_day(self, oracle):
        interval = build_interval(oracle, "2030-03-01", "2030-03-03", "18:00", "11:00")
        assert interval == Interval(utc(2030, 3, 1, 11), utc(2030, 3, 3, 4))

    def test_end_before_start(self, oracle):
        with pytest.raises(ValidationError):
            build_interval(oracle, "2030-03-01", None, "14:00", "10:00")

    def test_invalid_date(self, oracle):
        with pytest.raises(CalendarDateError):
            build_interval(oracle, "2030-02-30")


class TestIsBlocking:
    @pytest.mark.parametrize("status,verified,expected", [
        (S.CONFIRMED, False, True),
        (S.PENDING, False, False),
        (S.PENDING_DEPOSIT, False, False),
        (S.PAID_DEPOSIT, False, False),
        (S.PENDING_DEPOSIT, True, True),
        (S.PAID_DEPOSIT, True, True),
        (S.PENDING, True, True),
        (S.CANCELLED, True, False),
        (S.FINISHED, True, False),
    ])
    def test_blocking_set(self, status, verified, expected):
        booking = Booking(
            name="x", email="x@example.com", start_date="2030-01-01", status=status,
            deposit_verified_at=hours_ago(1) if verified else None,
        )
        assert is_blocking(booking) is expected


class TestOverlapEngine:
    async def test_only_blocking_bookings_conflict(self, database, oracle, make_booking):
        confirmed = await make_booking(
            start_date="2030-06-01", start_time="10:00", end_time="14:00", status=S.CONFIRMED,
        )
        await make_booking(start_date="2030-06-01", start_time="10:00", end_time="14:00", status=S.PAID_DEPOSIT)
        await make_booking(start_date="2030-06-01", start_time="10:00", end_time="14:00", status=S.CANCELLED)

        async with database.get_session() as session:
            engine = OverlapEngine(session, oracle)
            result = await engine.conflicts_for_fields("2030-06-01", None, "13:00", "15:00")

        assert result.overlaps
        assert [match.booking_id for match in result.matches] == [confirmed.id]

    async def test_excluding_self(self, database, oracle, make_booking):
        confirmed = await make_booking(
            start_date="2030-06-01", start_time="10:00", end_time="14:00", status=S.CONFIRMED,
        )
        async with database.get_session() as session:
            engine = OverlapEngine(session, oracle)
            result = await engine.conflicts_for_fields(
                "2030-06-01", None, "10:00", "14:00", exclude_id=confirmed.id,
            )
        assert not result.overlaps

    async def test_touching_bookings_do_not_conflict(self, database, oracle, make_booking):
        await make_booking(start_date="2030-06-01", start_time="10:00", end_time="12:00", status=S.CONFIRMED)
        async with database.get_session() as session:
            result = await OverlapEngine(session, oracle).conflicts_for_fields(
                "2030-06-01", None, "12:00", "14:00",
            )
        assert not result.overlaps

    async def test_multi_day_booking_blocks_middle_day(self, database, oracle, make_booking):
        await make_booking(
            start_date="2030-06-01", end_date="2030-06-03",
            start_time="18:00", end_time="11:00", status=S.CONFIRMED,
        )
        async with database.get_session() as session:
            result = await OverlapEngine(session, oracle).conflicts_for_fields(
                "2030-06-02", None, "09:00", "10:00",
            )
        assert result.overlaps

    async def test_verified_deposit_blocks_original_not_proposed(self, database, oracle, make_booking):
        await make_booking(
            start_date="2030-06-01", start_time="10:00", end_time="14:00",
            status=S.PENDING_DEPOSIT, deposit_verified_at=hours_ago(2),
            proposed_date="2030-06-08", proposed_start_time="10:00", proposed_end_time="14:00",
        )
        async with database.get_session() as session:
            engine = OverlapEngine(session, oracle)
            original = await engine.conflicts_for_fields("2030-06-01", None, "11:00", "12:00")
            proposed = await engine.conflicts_for_fields("2030-06-08", None, "11:00", "12:00")

        assert original.overlaps
        assert not proposed.overlaps

    async def test_unreadable_time_blocks_whole_day(self, database, oracle, make_booking):
        await make_booking(start_date="2030-06-01", start_time="late", end_time="later", status=S.CONFIRMED)
        async with database.get_session() as session:
            result = await OverlapEngine(session, oracle).conflicts_for_fields(
                "2030-06-01", None, "22:00", "23:00",
            )
        assert result.overlaps
        assert result.matches[0].degraded

    async def test_unreadable_date_is_skipped(self, database, oracle, make_booking):
        await make_booking(start_date="2030-02-30", status=S.CONFIRMED)
        async with database.get_session() as session:
            intervals = await OverlapEngine(session, oracle).blocking_intervals()
        assert intervals == []

    async def test_unavailable_dates(self, database, oracle, make_booking):
        await make_booking(start_date="2030-06-01", end_date="2030-06-03", status=S.CONFIRMED)
        await make_booking(start_date="2030-06-10", start_time="10:00", end_time="12:00", status=S.CONFIRMED)
        excluded = await make_booking(start_date="2030-07-01", status=S.CONFIRMED)
        await make_booking(start_date="2030-08-01", status=S.PENDING)

        async with database.get_session() as session:
            result = await OverlapEngine(session, oracle).unavailable_dates(exclude_id=excluded.id)

        assert result.dates == ["2030-06-01", "2030-06-02", "2030-06-03", "2030-06-10"]
        assert len(result.ranges) == 2
        assert result.ranges[1]["start_time"] == "10:00"
