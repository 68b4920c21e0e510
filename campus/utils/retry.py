"""
Bounded retry with exponential backoff for payment-gateway calls.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 0.5  # seconds
DEFAULT_MAX_DELAY = 8.0


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retrying after the given (1-based) failed attempt."""
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


async def call_with_retries(
    operation_name: str,
    func: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Await ``func()`` up to ``max_attempts`` times.

    Only exceptions matching ``retry_on`` are retried; anything else, and the
    last transient failure, propagates to the caller unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 1
    while True:
        try:
            return await func()
        except retry_on as exc:
            if attempt >= max_attempts:
                logger.error(f"{operation_name} failed after {attempt} attempts: {exc}")
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                "%s attempt %d/%d failed (%s); retrying in %.2fs",
                operation_name,
                attempt,
                max_attempts,
                exc,
                delay,
            )
            await sleep(delay)
            attempt += 1
