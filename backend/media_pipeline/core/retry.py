"""Exponential backoff shared by the storage gateway and background tasks."""

import asyncio
import logging
import math
from typing import Awaitable, Callable, Optional, TypeVar

from media_pipeline.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior with exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 300.0,
        backoff_multiplier: float = 2.0,
    ):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt using exponential backoff.

        Args:
            attempt: The current attempt number (1-indexed).

        Returns:
            The delay in seconds, capped at max_delay.
        """
        if attempt < 1:
            return self.initial_delay

        delay = self.initial_delay * math.pow(self.backoff_multiplier, attempt - 1)
        return min(delay, self.max_delay)


RETRY_CONFIGS = {
    "storage": RetryConfig(
        max_attempts=settings.STORAGE_RETRY_ATTEMPTS,
        initial_delay=settings.STORAGE_RETRY_INITIAL_DELAY,
        max_delay=settings.STORAGE_RETRY_MAX_DELAY,
        backoff_multiplier=settings.STORAGE_RETRY_BACKOFF,
    ),
    "ingest": RetryConfig(max_attempts=3, initial_delay=5.0, max_delay=60.0, backoff_multiplier=2),
    "default": RetryConfig(max_attempts=3, initial_delay=1.0, max_delay=60.0, backoff_multiplier=2),
}


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    is_retryable: Callable[[Exception], bool],
    description: str = "operation",
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """Run ``operation`` until it succeeds, fails permanently or runs out of attempts.

    Only exceptions for which ``is_retryable`` returns True are retried; the
    last one is re-raised once ``config.max_attempts`` is reached.
    """
    sleep = sleep or asyncio.sleep
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e) or attempt >= config.max_attempts:
                raise
            delay = config.calculate_delay(attempt)
            logger.warning(
                f"{description} failed (attempt {attempt}/{config.max_attempts}), "
                f"retrying in {delay:.2f}s: {e}"
            )
            await sleep(delay)
            attempt += 1
