"""
Optimistic locking retry decorator.

Every serializable point (sequence counter, inventory item, payment record,
order status) is a single-row compare-and-swap on a version column:

    UPDATE ... SET ..., version = version + 1 WHERE key = :k AND version = :read

A rowcount of 0 means another transaction won the race and the operation
raises StaleDataError. The decorator retries with exponential backoff and
jitter, and converts an exhausted budget into the caller's ContentionError
subclass so the API can answer 503 / retryable.
"""

import asyncio
import functools
import logging
import random
from typing import Type

from fulfillment.core.exceptions import ContentionError

logger = logging.getLogger(__name__)


class StaleDataError(Exception):
    """The version read no longer matches the row: a concurrent writer won."""


def backoff_delay(attempt: int, settings) -> float:
    """Seconds to wait before the next attempt: base * 2^attempt, capped, plus jitter."""
    base_delay = settings.contention_base_delay_ms / 1000.0
    max_delay = settings.contention_max_delay_ms / 1000.0
    jitter = random.uniform(0, settings.contention_jitter_ms / 1000.0)
    return min(base_delay * (2 ** attempt), max_delay) + jitter


def with_optimistic_retry(exhausted: Type[ContentionError] = ContentionError):
    """
    Decorator for async service methods that perform a CAS write.

    The retry budget is read from ``self.settings`` of the bound service so
    tests and deployments can tune it without touching module state.

    Usage:
        @with_optimistic_retry(SequenceContentionError)
        async def next_number(self, tenant_id, day):
            ...
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            settings = self.settings
            max_attempts = max(1, settings.contention_max_retries)
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(self, *args, **kwargs)
                except StaleDataError:
                    if attempt == max_attempts:
                        logger.error(
                            "Optimistic lock conflict unresolved after %d attempts for %s",
                            max_attempts, func.__qualname__,
                        )
                        raise exhausted(
                            f"{func.__name__} could not complete under contention; retry later"
                        )
                    delay = backoff_delay(attempt, settings)
                    logger.debug(
                        "StaleDataError in %s on attempt %d/%d, retrying in %.3fs",
                        func.__qualname__, attempt, max_attempts, delay,
                    )
                    await asyncio.sleep(delay)
        return wrapper
    return decorator
