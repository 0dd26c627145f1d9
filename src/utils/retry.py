"""Retry utilities with exponential backoff and optional jitter."""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from utils.logging import get_logger

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Total number of attempts, including the first one
        initial_delay: Delay in seconds before the second attempt
        max_delay: Upper bound for any single delay
        exponential_base: Multiplier applied to the delay after each failure
        jitter: Add up to 10% random jitter to each delay
        retryable_exceptions: Exception types that trigger another attempt
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,)


def calculate_backoff_delay(
    attempt: int,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> float:
    """Calculate delay for exponential backoff with optional jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        initial_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        exponential_base: Base for exponential backoff
        jitter: Whether to add random jitter

    Returns:
        Delay in seconds
    """
    delay = min(initial_delay * (exponential_base**attempt), max_delay)

    if jitter:
        delay += delay * 0.1 * random.random()

    return delay


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    logger: Optional[structlog.BoundLogger] = None,
    before_attempt: Optional[Callable[[int], None]] = None,
    **kwargs: Any,
) -> T:
    """Retry an async function with exponential backoff.

    Cancellation is never retried: ``asyncio.CancelledError`` is not an
    ``Exception`` subclass and passes straight through.

    Args:
        func: Async function to retry
        *args: Positional arguments for function
        config: Retry configuration (uses defaults if None)
        logger: Optional logger instance
        before_attempt: Optional hook called with the 0-indexed attempt number
            before each call (used to rewind streams)
        **kwargs: Keyword arguments for function

    Returns:
        Function result

    Raises:
        Last exception if all retries exhausted
    """
    if config is None:
        config = RetryConfig()

    logger = logger or get_logger("retry")

    for attempt in range(config.max_attempts):
        if before_attempt is not None:
            before_attempt(attempt)
        try:
            return await func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt >= config.max_attempts - 1:
                logger.error(
                    "All retry attempts exhausted",
                    max_attempts=config.max_attempts,
                    error=str(e),
                )
                raise

            delay = calculate_backoff_delay(
                attempt=attempt,
                initial_delay=config.initial_delay,
                max_delay=config.max_delay,
                exponential_base=config.exponential_base,
                jitter=config.jitter,
            )
            logger.warning(
                "Retry attempt failed, retrying",
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay=delay,
                error=str(e),
            )
            await asyncio.sleep(delay)

    raise RuntimeError("Retry logic error: max_attempts must be at least 1")
