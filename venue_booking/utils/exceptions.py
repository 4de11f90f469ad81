"""
Custom exceptions for the Venue Booking service.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import DBAPIError, OperationalError


class ErrorCode(str, Enum):
    """Standard error codes for the service."""

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CALENDAR_DATE_INVALID = "CALENDAR_DATE_INVALID"
    NOT_FOUND = "NOT_FOUND"

    # Lifecycle errors
    TRANSITION_DENIED = "TRANSITION_DENIED"
    BOOKING_CONFLICT = "BOOKING_CONFLICT"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"

    # Concurrency errors
    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    TRANSACTION_TIMEOUT = "TRANSACTION_TIMEOUT"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # Infrastructure errors
    STORE_ERROR = "STORE_ERROR"


class VenueBookingError(Exception):
    """Base exception class for the venue booking service."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        suggestions: Optional[List[str]] = None,
        retry_after: Optional[int] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.suggestions = suggestions or []
        self.retry_after = retry_after
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        result = {
            "error_code": self.error_code.value,
            "message": self.message,
        }

        if self.details:
            result["details"] = self.details

        if self.suggestions:
            result["suggestions"] = self.suggestions

        if self.retry_after:
            result["retry_after"] = self.retry_after

        return result


class ValidationError(VenueBookingError):
    """Malformed input."""

    def __init__(self, message: str, field_errors: Optional[Dict[str, List[str]]] = None, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.VALIDATION_ERROR)
        if field_errors and "details" not in kwargs:
            kwargs["details"] = {"field_errors": field_errors}
        super().__init__(message, **kwargs)
        self.field_errors = field_errors or {}


class CalendarDateError(ValidationError):
    """A date string that does not name a real calendar day (e.g. 2024-02-30)."""

    def __init__(self, value: str, **kwargs):
        super().__init__(
            f"Invalid calendar date: {value}",
            error_code=ErrorCode.CALENDAR_DATE_INVALID,
            details={"value": value},
            suggestions=["Use the YYYY-MM-DD format with a real day of the month"],
            **kwargs
        )
        self.value = value


class NotFoundError(VenueBookingError):
    """Base exception for resource not found errors."""

    def __init__(self, message: str, resource_type: Optional[str] = None, resource_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": resource_id} if resource_type else None,
            **kwargs
        )


class BookingNotFoundError(NotFoundError):
    """Exception raised when a booking is not found."""

    def __init__(self, booking_id: str, **kwargs):
        super().__init__(
            f"Booking {booking_id} not found",
            resource_type="booking",
            resource_id=str(booking_id),
            suggestions=["Check the booking ID"],
            **kwargs
        )


class TransitionDeniedError(VenueBookingError):
    """An illegal status transition, or a guard that refused it."""

    def __init__(
        self,
        reason: str,
        current_status: Optional[str] = None,
        target_status: Optional[str] = None,
        allowed: Optional[List[str]] = None,
        **kwargs
    ):
        details = {"current_status": current_status, "target_status": target_status}
        if allowed is not None:
            details["allowed"] = allowed
        kwargs.setdefault("error_code", ErrorCode.TRANSITION_DENIED)
        super().__init__(reason, details=details, **kwargs)
        self.reason = reason
        self.current_status = current_status
        self.target_status = target_status
        self.allowed = allowed or []


class ConflictError(TransitionDeniedError):
    """The candidate interval overlaps a booking that occupies the calendar."""

    def __init__(self, reason: str, overlapping: Optional[List[Dict[str, Any]]] = None, **kwargs):
        super().__init__(
            reason,
            error_code=ErrorCode.BOOKING_CONFLICT,
            suggestions=["Choose a different date or time"],
            **kwargs
        )
        self.overlapping = overlapping or []
        if self.overlapping:
            self.details["overlapping"] = self.overlapping


class TokenExpiredError(VenueBookingError):
    """Exception raised when a response token is past its expiry plus grace period."""

    def __init__(self, message: str = "This link has expired", **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.TOKEN_EXPIRED,
            suggestions=["Contact us to receive a new link"],
            **kwargs
        )


class ConcurrencyError(VenueBookingError):
    """Base class for store contention failures surfaced to callers."""


class LockTimeoutError(ConcurrencyError):
    """Lock contention that outlived every retry."""

    def __init__(self, attempts: int, retry_after: int = 1, **kwargs):
        super().__init__(
            f"Store remained locked after {attempts} attempts",
            error_code=ErrorCode.LOCK_TIMEOUT,
            details={"attempts": attempts},
            retry_after=retry_after,
            suggestions=["Please try again", "Wait a moment and retry"],
            **kwargs
        )
        self.attempts = attempts


class TransactionTimeoutError(ConcurrencyError):
    """The unit of work did not finish within its deadline and was rolled back."""

    def __init__(self, timeout: float, **kwargs):
        super().__init__(
            f"Transaction timed out after {timeout}s",
            error_code=ErrorCode.TRANSACTION_TIMEOUT,
            details={"timeout": timeout},
            **kwargs
        )
        self.timeout = timeout


class StoreError(VenueBookingError):
    """Generic store failure."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.STORE_ERROR,
            suggestions=["Try again later"],
            **kwargs
        )


class RateLimitError(VenueBookingError):
    """Exception raised when rate limit is exceeded."""

    def __init__(self, limit: int, window: int, retry_after: int, **kwargs):
        super().__init__(
            f"Rate limit exceeded: {limit} requests per {window} seconds",
            error_code=ErrorCode.RATE_LIMIT_EXCEEDED,
            details={"limit": limit, "window": window},
            retry_after=retry_after,
            suggestions=[f"Wait {retry_after} seconds before retrying"],
            **kwargs
        )


_LOCK_MESSAGES = (
    "database is locked",
    "database table is locked",
    "database is busy",
    "could not obtain lock",
    "lock not available",
    "deadlock detected",
    "could not serialize access",
)

# PostgreSQL SQLSTATEs: lock_not_available, deadlock_detected, serialization_failure
_LOCK_SQLSTATES = {"55P03", "40P01", "40001"}


def is_lock_contention(exc: BaseException) -> bool:
    """Return True when the store reports that a row or table is locked or busy."""
    if not isinstance(exc, (OperationalError, DBAPIError)):
        return False

    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _LOCK_SQLSTATES:
        return True

    text = str(orig if orig is not None else exc).lower()
    return any(marker in text for marker in _LOCK_MESSAGES)
