"""Bounded retry with exponential backoff for async operations.

The delay before attempt n+1 is ``base_delay * 2 ** (n - 1)``, capped at
``max_delay``. Only transient errors are retried; anything else
propagates on the first failure. When every attempt fails the last error
is re-raised so callers can record a terminal failure.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from loguru import logger

from uploader.core.errors import FileReadError, HashCancelled, NetworkError

T = TypeVar("T")

DEFAULT_RETRY_ON: tuple[type[BaseException], ...] = (NetworkError, FileReadError)
NEVER_RETRY: tuple[type[BaseException], ...] = (HashCancelled,)


def backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Delay to wait after the given (1-based) failed attempt."""
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_on: tuple[type[BaseException], ...] = DEFAULT_RETRY_ON,
    on_retry: Callable[[int, BaseException, float], Any] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    name: str | None = None,
) -> T:
    """Run `func` until it succeeds or `attempts` is exhausted.

    Args:
        func: Zero-argument coroutine factory; called once per attempt
        attempts: Total number of attempts (not retries)
        base_delay: Delay after the first failure, in seconds
        max_delay: Upper bound for any single delay
        retry_on: Exception types considered transient
        on_retry: Called as on_retry(attempt, error, delay) before sleeping
        sleep: Injected sleep, for tests
        name: Label used in log messages

    Returns:
        The first successful result.
    """
    label = name or getattr(func, "__name__", "operation")
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except NEVER_RETRY:
            raise
        except retry_on as e:
            if attempt == attempts:
                logger.error(f"{label}: failed after {attempts} attempts: {e}")
                raise

            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(f"Retry {attempt}/{attempts} for {label} in {delay:.1f}s: {e}")
            if on_retry is not None:
                result = on_retry(attempt, e, delay)
                if asyncio.iscoroutine(result):
                    await result
            await sleep(delay)

    raise RuntimeError("unreachable")  # pragma: no cover
