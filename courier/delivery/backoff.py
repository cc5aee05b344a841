"""
Exponential backoff for bounded retries around a single remote call.

The dispatch and flush loops do not use this; they poll on a fixed interval.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base: float) -> float:
    """Delay before retry number ``attempt`` (1-based): base * 2^(attempt-1)."""
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return base * (2 ** (attempt - 1))


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay: float,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    label: str = "call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Call ``fn`` up to ``max_attempts`` times, sleeping backoff_delay() between tries.

    Only exceptions in ``retry_on`` are retried; the last one is re-raised
    once attempts are exhausted.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    for attempt in range(1, max_attempts + 1):
        try:
            return await fn()
        except retry_on as e:
            if attempt >= max_attempts:
                raise
            delay = backoff_delay(attempt, base_delay)
            logger.warning(
                "%s failed (attempt %d/%d): %s. Retrying in %.1fs",
                label, attempt, max_attempts, e, delay,
            )
            await sleep(delay)
    raise AssertionError("unreachable")
