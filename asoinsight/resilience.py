"""
Retry with exponential backoff for transient upstream failures.

Only errors flagged ``retryable`` (``WarehouseUnavailableError``) are retried;
anything else propagates on the first attempt.
"""

import asyncio
import logging
import random
from typing import Any, Callable

from .errors import AnalyticsError
from .metrics import retry_attempts, retry_exhausted

logger = logging.getLogger(__name__)


def _is_retryable(error: Exception) -> bool:
    return isinstance(error, AnalyticsError) and error.retryable


async def retry_with_backoff(
    func: Callable,
    *args,
    max_attempts: int = 3,
    initial_delay: float = 0.1,
    max_delay: float = 10.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    service_name: str = "unknown",
    **kwargs
) -> Any:
    """
    Execute an async function, retrying retryable failures with exponential backoff.

    Retry strategy:
    - Attempt 1: Immediate
    - Attempt 2: Wait initial_delay
    - Attempt 3: Wait initial_delay * base
    - And so on until max_delay is reached

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        max_attempts: Maximum number of attempts
        initial_delay: Initial delay in seconds
        max_delay: Maximum delay between retries
        exponential_base: Base for exponential backoff
        jitter: Add random jitter to prevent thundering herd
        service_name: Service name for metrics
        **kwargs: Keyword arguments for func

    Returns:
        Result of func if successful

    Raises:
        The last error once attempts are exhausted, or the first non-retryable error
    """
    max_attempts = max(1, max_attempts)

    for attempt in range(1, max_attempts + 1):
        retry_attempts.labels(service=service_name, attempt=str(attempt)).inc()
        try:
            result = await func(*args, **kwargs)
            if attempt > 1:
                logger.info(f"Retry succeeded for {service_name} on attempt {attempt}/{max_attempts}")
            return result

        except Exception as e:
            if not _is_retryable(e):
                raise

            if attempt >= max_attempts:
                retry_exhausted.labels(service=service_name).inc()
                logger.error(
                    f"All {max_attempts} attempts exhausted for {service_name}. "
                    f"Last error: {type(e).__name__}"
                )
                raise

            delay = min(initial_delay * (exponential_base ** (attempt - 1)), max_delay)
            if jitter:
                delay = delay * (0.5 + random.random())

            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed for {service_name}: "
                f"{type(e).__name__}. Retrying in {delay:.3f}s..."
            )
            await asyncio.sleep(delay)
