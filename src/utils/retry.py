"""Retry utilities with exponential backoff."""

import asyncio
import random
from collections.abc import Awaitable
from typing import Any, Callable, Optional, TypeVar

import structlog

from utils.logging import get_logger

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = False,
        retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
    ) -> None:
        """Initialize retry configuration.

        Args:
            max_attempts: Total number of attempts, including the first (default: 3)
            initial_delay: Delay before the second attempt, in seconds (default: 1.0)
            max_delay: Maximum delay in seconds (default: 60.0)
            exponential_base: Base for exponential backoff (default: 2.0)
            jitter: Whether to add up to 10% random jitter to delays (default: False)
            retryable_exceptions: Tuple of exception types to retry on
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        if initial_delay < 0:
            raise ValueError(f"initial_delay must be >= 0, got {initial_delay}")

        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions


def calculate_backoff_delay(
    attempt: int,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = False,
) -> float:
    """Calculate delay for exponential backoff with optional jitter.

    Args:
        attempt: Number of the attempt that just failed (1-indexed)
        initial_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        exponential_base: Base for exponential backoff
        jitter: Whether to add random jitter

    Returns:
        Delay in seconds: ``initial_delay * base ** (attempt - 1)``, capped
    """
    delay = initial_delay * (exponential_base ** max(attempt - 1, 0))
    delay = min(delay, max_delay)

    if jitter:
        delay = delay + delay * 0.1 * random.random()

    return delay


class BackoffSchedule:
    """Per-operation backoff that never hands out a shorter delay than before.

    Jitter and the ``max_delay`` cap can otherwise produce a delay smaller
    than the previous one for the same operation.
    """

    def __init__(self, config: RetryConfig) -> None:
        self.config = config
        self.delays: list[float] = []

    def next_delay(self, attempt: int) -> float:
        """Return the delay to wait after ``attempt`` failed, and record it."""
        delay = calculate_backoff_delay(
            attempt=attempt,
            initial_delay=self.config.initial_delay,
            max_delay=self.config.max_delay,
            exponential_base=self.config.exponential_base,
            jitter=self.config.jitter,
        )
        if self.delays:
            delay = max(delay, self.delays[-1])
        self.delays.append(delay)
        return delay


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    logger: Optional[structlog.BoundLogger] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **kwargs: Any,
) -> T:
    """Retry an async function with exponential backoff.

    Args:
        func: Async function to retry
        *args: Positional arguments for function
        config: Retry configuration (uses defaults if None)
        logger: Optional logger instance
        sleep: Awaitable sleep function (replaceable in tests)
        **kwargs: Keyword arguments for function

    Returns:
        Function result

    Raises:
        Last exception if all retries exhausted
    """
    if config is None:
        config = RetryConfig()

    logger = logger or get_logger("retry")
    schedule = BackoffSchedule(config)

    for attempt in range(1, config.max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt >= config.max_attempts:
                logger.error(
                    "All retry attempts exhausted",
                    max_attempts=config.max_attempts,
                    error=str(e),
                )
                raise

            delay = schedule.next_delay(attempt)
            logger.warning(
                "Retry attempt failed, retrying",
                attempt=attempt,
                max_attempts=config.max_attempts,
                delay=delay,
                error=str(e),
            )
            await sleep(delay)

    raise RuntimeError("Retry logic error")
