"""
Health checks for the store and the task broker.
"""

import logging
import time
from typing import Any, Dict, Optional

import redis.asyncio as redis

from ..config import get_settings
from ..database import DatabaseManager

logger = logging.getLogger(__name__)


class HealthCheckResult:
    """Result of a health check."""

    def __init__(self, service: str, healthy: bool, response_time: float, details: Optional[Dict[str, Any]] = None):
        self.service = service
        self.healthy = healthy
        self.response_time = response_time
        self.details = details or {}

    @property
    def state(self) -> str:
        return "healthy" if self.healthy else "unhealthy"


async def check_database_health(database: DatabaseManager) -> HealthCheckResult:
    start_time = time.perf_counter()
    healthy = await database.ping()
    return HealthCheckResult("database", healthy, time.perf_counter() - start_time)


async def check_broker_health(url: Optional[str] = None, timeout: float = 2.0) -> HealthCheckResult:
    """Ping the Redis broker used by Celery."""
    url = url or get_settings().celery_broker_url
    start_time = time.perf_counter()
    client = redis.from_url(url, socket_connect_timeout=timeout, socket_timeout=timeout)
    try:
        await client.ping()
        return HealthCheckResult("broker", True, time.perf_counter() - start_time)
    except (redis.RedisError, OSError) as e:
        logger.warning(f"Broker health check failed: {e}")
        return HealthCheckResult(
            "broker",
            False,
            time.perf_counter() - start_time,
            details={"error": str(e), "error_type": type(e).__name__},
        )
    finally:
        await client.aclose()


async def get_health_status(database: DatabaseManager, check_broker: bool = True) -> Dict[str, str]:
    """
    Overall status: ``unhealthy`` without a store, ``degraded`` when only the
    broker is down (notifications queue up once it returns).
    """
    db = await check_database_health(database)
    broker_state = "skipped"
    if check_broker:
        broker_state = (await check_broker_health()).state

    if not db.healthy:
        overall = "unhealthy"
    elif broker_state == "unhealthy":
        overall = "degraded"
    else:
        overall = "healthy"

    return {
        "status": overall,
        "database": db.state,
        "broker": broker_state,
        "environment": get_settings().environment,
    }
