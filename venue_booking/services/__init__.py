"""Business logic services for the Venue Booking service."""

from .guards import GuardContext, GuardEvaluator, GuardResult
from .lifecycle_service import LifecycleService, TransitionContext
from .notification_service import CeleryNotifier, Notifier, RecordingNotifier
from .overlap_service import Interval, OverlapEngine
from .rate_limit_service import RateLimiter, RateLimitResult

__all__ = [
    "CeleryNotifier",
    "GuardContext",
    "GuardEvaluator",
    "GuardResult",
    "Interval",
    "LifecycleService",
    "Notifier",
    "OverlapEngine",
    "RateLimiter",
    "RateLimitResult",
    "RecordingNotifier",
    "TransitionContext",
]
