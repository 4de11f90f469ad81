"""
Business-timezone date handling.

Every past/future decision in the service goes through a ``DateOracle`` so
that the host machine's local zone never leaks into a booking rule. Instants
are timezone-aware UTC ``datetime`` objects; calendar days are ``YYYY-MM-DD``
strings in the business zone.
"""

import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Optional, Tuple
from zoneinfo import ZoneInfo

from ..config import get_settings
from .exceptions import CalendarDateError, ValidationError

DATE_PATTERN = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
TIME_24H_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")
TIME_12H_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})\s*([AaPp][Mm])$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DateOracle:
    """Canonicalizes dates and times of day in one fixed business timezone."""

    def __init__(
        self,
        timezone_name: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.timezone_name = timezone_name or get_settings().business_timezone
        self.tz = ZoneInfo(self.timezone_name)
        self._clock = clock or utc_now

    def now(self) -> datetime:
        """Current instant (aware, UTC)."""
        return self._clock().astimezone(timezone.utc)

    def today(self) -> str:
        """Current calendar day in the business zone."""
        return self.to_day_string(self.now())

    def parse_date(self, date_string: str) -> date:
        """
        Parse a ``YYYY-MM-DD`` string into a calendar date.

        A trailing ``T...`` component (ISO datetime input) is discarded.

        Raises:
            CalendarDateError: If the string is malformed or names a day that
                does not exist, such as February 30.
        """
        if not isinstance(date_string, str):
            raise CalendarDateError(str(date_string))

        value = date_string.strip().split("T", 1)[0]
        match = DATE_PATTERN.match(value)
        if not match:
            raise CalendarDateError(date_string)

        year, month, day = (int(part) for part in match.groups())
        try:
            return date(year, month, day)
        except ValueError:
            raise CalendarDateError(date_string) from None

    def parse_time(self, time_string: str) -> Tuple[int, int]:
        """
        Parse a time of day into ``(hour, minute)``.

        Accepts 24-hour ``HH:MM`` (seconds are ignored) and 12-hour
        ``h:MM AM``/``h:MM PM``.

        Raises:
            ValidationError: If the value is not a recognizable time of day.
        """
        value = (time_string or "").strip()

        match = TIME_12H_PATTERN.match(value)
        if match:
            hour, minute = int(match.group(1)), int(match.group(2))
            if not 1 <= hour <= 12 or minute > 59:
                raise ValidationError(f"Invalid time of day: {time_string}")
            meridiem = match.group(3).upper()
            if meridiem == "PM" and hour != 12:
                hour += 12
            elif meridiem == "AM" and hour == 12:
                hour = 0
            return hour, minute

        match = TIME_24H_PATTERN.match(value)
        if match:
            hour, minute = int(match.group(1)), int(match.group(2))
            if hour > 23 or minute > 59:
                raise ValidationError(f"Invalid time of day: {time_string}")
            return hour, minute

        raise ValidationError(f"Invalid time of day: {time_string}")

    def to_instant(self, date_string: str, time_string: Optional[str] = None) -> datetime:
        """Combine a business-zone date and optional time of day into a UTC instant."""
        day = self.parse_date(date_string)
        hour, minute = self.parse_time(time_string) if time_string else (0, 0)
        local = datetime.combine(day, time(hour, minute), tzinfo=self.tz)
        return local.astimezone(timezone.utc)

    def start_of_day(self, date_string: str) -> datetime:
        return self.to_instant(date_string)

    def to_day_string(self, instant: datetime) -> str:
        """Calendar day of ``instant`` in the business zone."""
        return self._localize(instant).strftime("%Y-%m-%d")

    def format_instant(self, instant: datetime) -> str:
        """Human readable ``YYYY-MM-DD HH:MM GMT+7`` style rendering."""
        local = self._localize(instant)
        offset = local.utcoffset() or timedelta(0)
        total_minutes = int(offset.total_seconds() // 60)
        sign = "+" if total_minutes >= 0 else "-"
        hours, minutes = divmod(abs(total_minutes), 60)
        suffix = f"GMT{sign}{hours}" + (f":{minutes:02d}" if minutes else "")
        return f"{local.strftime('%Y-%m-%d %H:%M')} {suffix}"

    def add_days(self, date_string: str, days: int) -> str:
        return (self.parse_date(date_string) + timedelta(days=days)).isoformat()

    def is_past(self, instant: datetime, now: Optional[datetime] = None) -> bool:
        return instant < (now or self.now())

    def is_date_in_past(self, date_string: str, time_string: Optional[str] = None) -> bool:
        return self.is_past(self.to_instant(date_string, time_string))

    def _localize(self, instant: datetime) -> datetime:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        return instant.astimezone(self.tz)
