"""
Resilience patterns for storage and inference calls.

Implements bounded retry with exponential backoff for transactional writes
that lose an optimistic concurrency check and for idempotent collaborator
calls that fail transiently.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry logic."""

    max_attempts: int = 5
    base_delay: float = 0.02
    max_delay: float = 0.5
    exponential_backoff: bool = True
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows the given zero-based attempt."""
        delay = self.base_delay
        if self.exponential_backoff:
            delay = min(delay * (2**attempt), self.max_delay)

        if self.jitter:
            delay *= 0.5 + random.random() * 0.5  # nosec B311

        return delay


class RetryExhaustedError(Exception):
    """Raised when every attempt failed with a retryable exception."""

    def __init__(self, attempts: int, last_exception: BaseException):
        super().__init__(f"All {attempts} attempts failed: {last_exception}")
        self.attempts = attempts
        self.last_exception = last_exception


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig,
    expected_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    description: Optional[str] = None,
) -> T:
    """Await ``func`` with retry logic and exponential backoff.

    Only ``expected_exceptions`` are retried; anything else propagates at
    once. When the last attempt fails, ``RetryExhaustedError`` is raised with
    the final exception chained.
    """
    label = description or getattr(func, "__name__", "operation")
    attempts = max(1, config.max_attempts)

    for attempt in range(attempts):
        try:
            return await func()

        except expected_exceptions as e:
            if attempt == attempts - 1:
                logger.error(f"{label}: all {attempts} attempts failed")
                raise RetryExhaustedError(attempts, e) from e

            delay = config.delay_for(attempt)
            logger.warning(
                f"{label}: attempt {attempt + 1} failed, retrying in {delay:.3f}s: {e}"
            )
            await asyncio.sleep(delay)

    # max(1, ...) guarantees at least one iteration
    raise AssertionError("unreachable")
