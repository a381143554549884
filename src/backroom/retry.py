"""
Retry logic with exponential backoff.

Provides a bounded-retry combinator that returns a typed result instead of
raising, and a decorator for retrying transient failures.
"""

import logging
import random
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Generic, Optional, TypeVar, Union

from backroom.exceptions import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    initial_delay: float = 0.5
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome of a retried call."""

    value: T

    @property
    def is_ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    """Failed outcome of a retried call."""

    error: RetryExhaustedError

    @property
    def is_ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Calculate delay before next retry using exponential backoff.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay = config.initial_delay * (config.exponential_base**attempt)
    delay = min(delay, config.max_delay)

    if config.jitter:
        # Up to 25% jitter
        delay += delay * 0.25 * random.random()

    return delay


def retry_call(
    func: Callable[[], T],
    max_attempts: int,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    backoff: Optional[RetryConfig] = None,
    label: str = "call",
) -> Result[T]:
    """
    Call ``func`` up to ``max_attempts`` times.

    Exceptions listed in ``retry_on`` trigger another attempt; anything else
    propagates. Attempts follow each other immediately unless a backoff
    config is given.

    Args:
        func: Zero-argument callable to invoke
        max_attempts: Upper bound on attempts (at least 1)
        retry_on: Exception types that count as a retryable failure
        backoff: Optional delay schedule between attempts
        label: Name used in log messages

    Returns:
        Ok(value) on the first success, or Err(RetryExhaustedError)
    """
    attempts = max(1, max_attempts)
    last_error: Optional[BaseException] = None

    for attempt in range(attempts):
        try:
            return Ok(func())
        except retry_on as e:
            last_error = e
            logger.warning(f"Attempt {attempt + 1}/{attempts} for {label} failed: {e}")
            if backoff is not None and attempt < attempts - 1:
                time.sleep(calculate_delay(attempt, backoff))

    logger.error(f"Max attempts ({attempts}) exhausted for {label}")
    return Err(RetryExhaustedError(attempts, last_error))


def with_retry(
    config: Optional[RetryConfig] = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for retrying a function on transient errors.

    The last error is re-raised once retries are exhausted.

    Args:
        config: Retry configuration (uses defaults if not provided)
        retry_on: Exception types considered transient

    Returns:
        Decorated function with retry logic
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt in range(config.max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    if attempt >= config.max_retries:
                        logger.error(
                            f"Max retries ({config.max_retries}) exceeded for {func.__name__}: {e}"
                        )
                        raise
                    delay = calculate_delay(attempt, config)
                    logger.warning(
                        f"Retry {attempt + 1}/{config.max_retries} for {func.__name__}: "
                        f"{e}, waiting {delay:.2f}s"
                    )
                    time.sleep(delay)
            raise RuntimeError("Unexpected retry loop exit")

        return wrapper

    return decorator
