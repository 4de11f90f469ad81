"""
Response tokens handed to external parties.
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..config import get_settings


def generate_response_token() -> str:
    """64 hex characters from 32 random bytes."""
    return secrets.token_hex(32)


def calculate_token_expiry(
    interval_end: Optional[datetime],
    now: Optional[datetime] = None,
    max_lifetime_days: Optional[int] = None,
) -> datetime:
    """A token expires at the reservation end or after the maximum lifetime, whichever is first."""
    now = now or datetime.now(timezone.utc)
    if max_lifetime_days is None:
        max_lifetime_days = get_settings().token_max_lifetime_days
    cap = now + timedelta(days=max_lifetime_days)
    if interval_end is None:
        return cap
    return min(interval_end, cap)


def grace_period(extended: bool = False) -> timedelta:
    settings = get_settings()
    seconds = (
        settings.token_extended_grace_period_seconds if extended
        else settings.token_grace_period_seconds
    )
    return timedelta(seconds=seconds)


def validate_token_expiry(
    expires_at: Optional[datetime],
    now: Optional[datetime] = None,
    extended: bool = False,
) -> bool:
    """
    Return True while ``now`` is before expiry plus the grace period.

    The grace period is applied here, never stored. Deposit uploads use the
    extended grace period since they can take longer to complete.
    """
    if expires_at is None:
        return False
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return now < expires_at + grace_period(extended)
