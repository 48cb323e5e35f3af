"""Retry helpers with exponential backoff for transient backend failures."""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from convosync.errors import NetworkError


logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRIABLE_ERRORS: Tuple[Type[BaseException], ...] = (NetworkError,)


def exponential_backoff_delay(attempt: int, base_delay: float = 0.5, max_delay: float = 30.0) -> float:
    """Delay for a 0-indexed attempt: ``base_delay * 2**attempt`` capped, plus up to 10% jitter."""
    delay = min(base_delay * (2 ** attempt), max_delay)
    return delay + random.uniform(0, 0.1 * delay)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    attempt = 0
    while True:
        try:
            return await func()
        except RETRIABLE_ERRORS as exc:
            if attempt >= max_retries:
                logger.warning("Giving up after %d retries: %s", max_retries, exc)
                raise
            delay = exponential_backoff_delay(attempt, base_delay, max_delay)
            logger.info("Retrying in %.2fs after transient error: %s", delay, exc)
            if on_retry is not None:
                on_retry(attempt + 1, exc)
            await asyncio.sleep(delay)
            attempt += 1
