"""
In-process counters for lock contention, rate limiting and transaction health.
"""

import logging
import threading
from collections import Counter
from typing import Dict

logger = logging.getLogger(__name__)

LOCK_CONFLICTS = "lock_conflicts"
LOCK_RETRIES = "lock_retries"
RATE_LIMIT_HITS = "rate_limit_hits"
RATE_LIMIT_BYPASSES = "rate_limit_bypasses"
TRANSACTION_FAILURES = "transaction_failures"
TRANSACTION_TIMEOUTS = "transaction_timeouts"
OVERLAP_CHECK_FAILURES = "overlap_check_failures"
NOTIFICATION_FAILURES = "notification_failures"

KNOWN_COUNTERS = (
    LOCK_CONFLICTS,
    LOCK_RETRIES,
    RATE_LIMIT_HITS,
    RATE_LIMIT_BYPASSES,
    TRANSACTION_FAILURES,
    TRANSACTION_TIMEOUTS,
    OVERLAP_CHECK_FAILURES,
    NOTIFICATION_FAILURES,
)


class MetricsRegistry:
    """Thread-safe named counters. Recording never raises into the caller."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Counter = Counter({name: 0 for name in KNOWN_COUNTERS})

    def increment(self, name: str, amount: int = 1) -> None:
        try:
            with self._lock:
                self._counters[name] += amount
        except Exception as e:
            logger.warning(f"Failed to record metric {name}: {e}")

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def reset(self) -> None:
        with self._lock:
            self._counters = Counter({name: 0 for name in KNOWN_COUNTERS})


# Process-wide registry exported on /metrics
metrics = MetricsRegistry()
