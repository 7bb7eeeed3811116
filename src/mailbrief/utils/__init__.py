"""Utility functions for mailbrief."""

import asyncio
import inspect
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, TypeVar

import structlog

from mailbrief.exceptions import TransientError

logger = structlog.get_logger()

F = TypeVar("F", bound=Callable[..., Any])


@dataclass
class ExponentialBackoff:
    """Exponential delay schedule capped at ``max_delay``.

    Call :meth:`next_delay` after each failure and :meth:`reset` after a
    success. Background loops use it with an unbounded number of attempts.
    """

    initial: float = 1.0
    maximum: float = 300.0
    multiplier: float = 2.0
    failures: int = 0

    def next_delay(self) -> float:
        delay = min(self.maximum, self.initial * (self.multiplier**self.failures))
        self.failures += 1
        return delay

    def reset(self) -> None:
        self.failures = 0


def retry_on_failure(
    max_retries: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    max_delay: float = 60.0,
    retry_on: tuple[type[BaseException], ...] = (TransientError,),
) -> Callable[[F], F]:
    """Decorator to retry a function on failure with exponential backoff.

    Works for both plain and ``async`` functions. Only exceptions listed in
    ``retry_on`` are retried; anything else propagates immediately.

    Args:
        max_retries: Maximum number of retry attempts.
        delay: Initial delay between retries in seconds.
        backoff: Multiplier for delay after each retry.
        max_delay: Upper bound for a single delay.
        retry_on: Exception types considered retryable.

    Returns:
        Decorated function with retry logic.
    """

    def decorator(func: F) -> F:
        if inspect.iscoroutinefunction(func):

            @wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                current_delay = delay
                for attempt in range(max_retries + 1):
                    try:
                        return await func(*args, **kwargs)
                    except retry_on as e:
                        if attempt >= max_retries:
                            _log_exhausted(func, max_retries, e)
                            raise
                        _log_retry(func, attempt, max_retries, current_delay, e)
                        await asyncio.sleep(current_delay)
                        current_delay = min(max_delay, current_delay * backoff)
                raise AssertionError("unreachable")

            return async_wrapper  # type: ignore

        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            current_delay = delay
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    if attempt >= max_retries:
                        _log_exhausted(func, max_retries, e)
                        raise
                    _log_retry(func, attempt, max_retries, current_delay, e)
                    time.sleep(current_delay)
                    current_delay = min(max_delay, current_delay * backoff)
            raise AssertionError("unreachable")

        return wrapper  # type: ignore

    return decorator


def _log_retry(
    func: Callable[..., Any],
    attempt: int,
    max_retries: int,
    current_delay: float,
    error: BaseException,
) -> None:
    logger.warning(
        "function_retry",
        function=func.__name__,
        attempt=attempt + 1,
        max_retries=max_retries,
        delay=current_delay,
        error=str(error),
    )


def _log_exhausted(func: Callable[..., Any], max_retries: int, error: BaseException) -> None:
    logger.error(
        "function_retry_exhausted",
        function=func.__name__,
        attempts=max_retries + 1,
        error=str(error),
    )
