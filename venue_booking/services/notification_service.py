"""
Outbound status notifications.

The lifecycle service hands each committed transition to a ``Notifier``.
Notifiers must not raise into the lifecycle operation; the Celery-backed
notifier only enqueues, and delivery happens in a worker with its own
retry policy.
"""

import importlib
import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from ..config import get_settings
from ..models.booking import Booking, BookingStatus
from ..utils.metrics import NOTIFICATION_FAILURES, MetricsRegistry, metrics as default_metrics

logger = logging.getLogger(__name__)


@dataclass
class StatusNotification:
    """Serializable payload describing one applied transition."""
    booking_id: str
    reference_number: Optional[str]
    name: str
    email: str
    new_status: str
    reason: Optional[str] = None
    response_token: Optional[str] = None

    @classmethod
    def from_booking(cls, booking: Booking, new_status: BookingStatus, reason: Optional[str]) -> "StatusNotification":
        return cls(
            booking_id=str(booking.id),
            reference_number=booking.reference_number,
            name=booking.name,
            email=booking.email,
            new_status=BookingStatus(new_status).value,
            reason=reason,
            response_token=booking.response_token,
        )

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


class Notifier:
    """Fire-and-forget notification contract."""

    def __init__(self, metrics: Optional[MetricsRegistry] = None):
        self.metrics = metrics or default_metrics

    async def notify(self, booking: Booking, new_status: BookingStatus, reason: Optional[str] = None) -> None:
        notification = StatusNotification.from_booking(booking, new_status, reason)
        try:
            await self.send(notification)
        except Exception as e:
            self.metrics.increment(NOTIFICATION_FAILURES)
            logger.warning(f"Failed to dispatch notification for booking {notification.booking_id}: {e}")

    async def send(self, notification: StatusNotification) -> None:
        raise NotImplementedError


class CeleryNotifier(Notifier):
    """Enqueue delivery on the Celery notification queue."""

    async def send(self, notification: StatusNotification) -> None:
        from ..tasks.notification_tasks import deliver_status_notification

        deliver_status_notification.delay(notification.to_payload())
        logger.info(f"Queued {notification.new_status} notification for booking {notification.booking_id}")


class RecordingNotifier(Notifier):
    """Keeps notifications in memory; used by tests and local tooling."""

    def __init__(self, metrics: Optional[MetricsRegistry] = None):
        super().__init__(metrics)
        self.sent: List[StatusNotification] = []

    async def send(self, notification: StatusNotification) -> None:
        self.sent.append(notification)


def log_sink(payload: Dict[str, Any]) -> None:
    """Default delivery sink: write the notification to the log."""
    logger.info(
        f"Booking {payload.get('booking_id')} is now {payload.get('new_status')}",
        extra={"notification": payload},
    )


def resolve_sink(path: Optional[str] = None) -> Callable[[Dict[str, Any]], None]:
    """
    Resolve the configured delivery sink, given as ``"package.module:function"``.

    Falls back to ``log_sink`` when nothing is configured.
    """
    path = path if path is not None else get_settings().notification_sink
    if not path:
        return log_sink
    module_name, _, attribute = path.partition(":")
    module = importlib.import_module(module_name)
    return getattr(module, attribute)
