"""
Celery task delivering booking status notifications.
"""

import logging
from typing import Any, Dict

from .celery_app import celery_app
from ..config import get_settings
from ..services.notification_service import resolve_sink
from ..utils.metrics import NOTIFICATION_FAILURES, metrics
from ..utils.retry import RetryConfig, compute_delay

logger = logging.getLogger(__name__)


def retry_countdown(retries: int) -> float:
    """Seconds to wait before redelivery number ``retries + 1``."""
    settings = get_settings()
    config = RetryConfig(
        base_delay=settings.notification_retry_base_delay,
        max_delay=3600.0,
        jitter=True,
    )
    return compute_delay(config, retries)


@celery_app.task(bind=True, name="deliver_status_notification")
def deliver_status_notification(self, payload: Dict[str, Any]):
    """
    Hand a committed status change to the configured delivery sink.

    Args:
        payload: ``StatusNotification.to_payload()`` output
    """
    settings = get_settings()
    booking_id = payload.get("booking_id")

    try:
        sink = resolve_sink()
        sink(payload)
    except Exception as exc:
        if self.request.retries >= settings.notification_max_retries:
            metrics.increment(NOTIFICATION_FAILURES)
            logger.error(f"Giving up on notification for booking {booking_id}: {exc}")
            raise
        countdown = retry_countdown(self.request.retries)
        logger.warning(
            f"Notification for booking {booking_id} failed, retrying in {countdown:.0f}s: {exc}"
        )
        raise self.retry(exc=exc, countdown=countdown, max_retries=settings.notification_max_retries)

    logger.info(f"Delivered {payload.get('new_status')} notification for booking {booking_id}")
    return {"booking_id": booking_id, "status": "sent"}
