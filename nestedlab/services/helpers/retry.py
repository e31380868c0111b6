"""
Bounded retry with fixed backoff.

Used around the operations that legitimately flap while a lab comes up:
WinRM listeners after a reboot, the ISO download, SSH into a fresh guest.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from nestedlab.errors import RetryExhaustedError

logger = logging.getLogger("nestedlab.retry")

T = TypeVar("T")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
    delay: float,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    description: str = "operation",
) -> T:
    """
    Run `operation` until it succeeds or `attempts` runs out.

    Args:
        operation: Zero-argument coroutine factory (called once per attempt)
        attempts: Total attempts, at least 1
        delay: Seconds to sleep between attempts (fixed, no growth)
        retry_on: Exception types that trigger another attempt; anything
            else propagates immediately
        description: Used in log lines and the final error

    Returns:
        The operation's result

    Raises:
        RetryExhaustedError: every attempt failed (chained from the last error)
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    last_exc = None
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            last_exc = e
            if attempt == attempts:
                break
            logger.warning(
                "%s failed (attempt %d/%d): %s - retrying in %.0fs",
                description, attempt, attempts, e, delay,
            )
            await asyncio.sleep(delay)

    logger.error("%s failed after %d attempts: %s", description, attempts, last_exc)
    raise RetryExhaustedError(
        f"{description} failed after {attempts} attempts: {last_exc}",
        attempts=attempts,
        last_exception=last_exc,
    ) from last_exc
