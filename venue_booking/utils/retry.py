"""
Retry with exponential backoff for transient store failures.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    backoff_factor: float = 1.0


def compute_delay(config: RetryConfig, attempt: int) -> float:
    """Backoff delay before retry number ``attempt + 1`` (attempt is zero-based)."""
    delay = min(
        config.base_delay * (config.exponential_base ** attempt) * config.backoff_factor,
        config.max_delay
    )

    # Add jitter to prevent thundering herd
    if config.jitter:
        delay = delay * (0.5 + random.random() * 0.5)

    return delay


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    config: RetryConfig,
    should_retry: Callable[[BaseException], bool],
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    operation_name: Optional[str] = None,
) -> Any:
    """
    Retry an async callable with exponential backoff.

    Args:
        func: Zero-argument coroutine function to call
        config: Retry configuration; ``max_attempts`` counts the first call
        should_retry: Predicate deciding whether an error is transient
        on_retry: Called with (attempt, error) before each backoff sleep
        operation_name: Name used in log lines

    Returns:
        The result of the first successful call

    Raises:
        The error that was not retryable, or the last error once all
        attempts are exhausted
    """
    name = operation_name or getattr(func, "__name__", "operation")

    for attempt in range(config.max_attempts):
        try:
            result = await func()

            if attempt > 0:
                logger.info(f"{name} succeeded on attempt {attempt + 1}")

            return result

        except Exception as e:
            if not should_retry(e):
                raise

            if attempt == config.max_attempts - 1:
                logger.error(f"All {config.max_attempts} attempts failed for {name}")
                raise

            delay = compute_delay(config, attempt)

            if on_retry is not None:
                on_retry(attempt + 1, e)

            logger.warning(
                f"Attempt {attempt + 1} failed for {name}: {e}. "
                f"Retrying in {delay:.2f}s..."
            )

            await asyncio.sleep(delay)

    raise RuntimeError("retry_async called with max_attempts < 1")
