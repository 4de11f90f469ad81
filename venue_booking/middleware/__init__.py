"""Middleware for the Venue Booking service."""

from .error_handler import ErrorHandlerMiddleware
from .logging import LoggingMiddleware
from .rate_limiter import RateLimiterMiddleware

__all__ = [
    "ErrorHandlerMiddleware",
    "LoggingMiddleware",
    "RateLimiterMiddleware",
]
