"""
Retry Handler - bounded retry with exponential backoff.

Only failures listed as retryable are retried; anything else propagates on
the first occurrence.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from gatekeeper.errors import RetryableProviderError

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3           # Retries after the first attempt
    base_delay: float = 2.0        # Delay before the first retry, doubled each time
    max_delay: float = 60.0
    jitter: float = 0.0            # Random jitter (0-1)
    retryable_exceptions: Tuple[Type[BaseException], ...] = (RetryableProviderError,)


def calculate_delay(retry_number: int, config: RetryConfig) -> float:
    """Delay before retry number `retry_number` (1-based): 2s, 4s, 8s with defaults."""
    delay = config.base_delay * (2 ** (retry_number - 1))

    if config.jitter > 0:
        jitter_range = delay * config.jitter
        delay += random.uniform(-jitter_range, jitter_range)

    return min(delay, config.max_delay)


async def retry_with_backoff(
    func: Callable[..., Awaitable[Any]],
    *args,
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **kwargs
) -> Any:
    """
    Execute an async function, retrying retryable failures.

    Args:
        func: Coroutine function to call
        config: Retry configuration
        sleep: Awaitable sleep, injectable for tests

    Raises:
        The last retryable exception once retries are exhausted, or the first
        non-retryable exception.
    """
    config = config or RetryConfig()
    retry_number = 0

    while True:
        try:
            return await func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if retry_number >= config.max_retries:
                logger.warning(f"Giving up after {retry_number} retries: {e}")
                raise
            retry_number += 1
            delay = calculate_delay(retry_number, config)
            logger.info(
                f"Retrying after {delay:.1f}s "
                f"({config.max_retries - retry_number + 1} retries left): {e}"
            )
            await sleep(delay)
