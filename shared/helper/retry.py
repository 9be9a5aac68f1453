"""Retry logic for transient backend failures."""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    logger: Any,
    max_retries: int = 2,
    delay: float = 0.5,
    backoff_multiplier: float = 2.0,
    exceptions: tuple = (Exception,),
    context: str = "",
) -> T:
    """
    Retry an async function with exponential backoff.

    Args:
        func: Zero-argument coroutine factory to retry.
        logger: Logger of the calling client, e.g. from HelperConfig.get_logger().
        max_retries: Maximum number of retry attempts after the first call.
        delay: Initial delay in seconds.
        backoff_multiplier: Multiplier for exponential backoff.
        exceptions: Tuple of exceptions to catch and retry. Anything else propagates at once.
        context: Operation name used in log messages.

    Returns:
        Result of the function call.

    Raises:
        Last exception if all retries fail.
    """
    last_exception: BaseException | None = None

    for attempt in range(max_retries + 1):
        try:
            return await func()
        except exceptions as e:
            last_exception = e
            if attempt < max_retries:
                wait_time = delay * (backoff_multiplier ** attempt)
                logger.warning(
                    "%s attempt %d/%d failed: %s. Retrying in %.2fs...",
                    context or "Operation", attempt + 1, max_retries + 1, e, wait_time,
                )
                await asyncio.sleep(wait_time)
            else:
                logger.error("%s failed after %d attempts. Last error: %s", context or "Operation", max_retries + 1, e)

    raise last_exception
