"""
Database models for the venue booking service.
"""

from .base import Base, UTCDateTime
from .booking import Booking, BookingStatus
from .booking_history import BookingStatusHistory
from .rate_limit import RateLimitBucket

__all__ = [
    "Base",
    "UTCDateTime",
    "Booking",
    "BookingStatus",
    "BookingStatusHistory",
    "RateLimitBucket",
]
