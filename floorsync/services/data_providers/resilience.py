"""
Retry helpers for upstream API calls.

Transient failures are retried with linear backoff (``attempt * base_delay``),
or after the upstream's ``Retry-After`` when that is longer.
Anything outside ``retry_on`` propagates on the first occurrence, which is how
fatal errors (401/403/404) stop the loop.

Usage:
    from floorsync.services.data_providers.resilience import retry_async

    stats = RetryStats()
    points = await retry_async(
        lambda: client.fetch_price_history("azuki", "1d", start, end),
        max_attempts=3,
        base_delay=2.0,
        stats=stats,
    )
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from floorsync.core.exceptions import NoValidDataError, TransientFetchError
from floorsync.core.logging import get_logger


logger = get_logger("resilience")

T = TypeVar("T")

# Default exceptions that should trigger retry
DEFAULT_RETRY_EXCEPTIONS: tuple[type[Exception], ...] = (
    TransientFetchError,
    NoValidDataError,
)


class RetryExhaustedError(Exception):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, attempts: int, last_error: Exception | None = None):
        self.attempts = attempts
        self.last_error = last_error
        message = f"All {attempts} retry attempts exhausted"
        if last_error:
            message += f": {last_error}"
        super().__init__(message)


@dataclass
class RetryStats:
    """Attempt counter filled in by retry_async."""

    attempts: int = 0
    total_delay: float = 0.0


async def call_with_timeout(func: Callable[[], Awaitable[T]], timeout: float | None) -> T:
    """Await ``func()`` with a deadline; a timeout is a retryable failure."""
    if not timeout:
        return await func()
    try:
        return await asyncio.wait_for(func(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientFetchError(f"Call timed out after {timeout:g}s") from e


def linear_backoff(attempt: int, base_delay: float) -> float:
    """Delay before the retry following ``attempt`` (1-based)."""
    return attempt * base_delay


async def retry_async(
    func: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 2.0,
    retry_on: tuple[type[Exception], ...] = DEFAULT_RETRY_EXCEPTIONS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_retry: Callable[[int, Exception], None] | None = None,
    stats: RetryStats | None = None,
    max_retry_after: float = 300.0,
) -> T:
    """
    Retry an async function with linear backoff.

    Args:
        func: Async callable to retry
        max_attempts: Maximum attempts (including the first)
        base_delay: Delay unit in seconds
        retry_on: Exceptions to retry on
        sleep: Awaitable sleep used between attempts
        on_retry: Callback(attempt_number, exception) before each retry
        stats: Receives the number of attempts made
        max_retry_after: Upper bound on a server-requested delay

    Returns:
        Result from successful func call

    Raises:
        RetryExhaustedError: If all attempts fail with retryable errors
        Exception: The first non-retryable error, unchanged
    """
    stats = stats if stats is not None else RetryStats()
    last_error: Exception | None = None

    for attempt in range(1, max_attempts + 1):
        stats.attempts = attempt
        try:
            return await func()
        except retry_on as e:
            last_error = e

            if attempt >= max_attempts:
                logger.warning(f"Retry exhausted after {max_attempts} attempts: {e}")
                raise RetryExhaustedError(max_attempts, last_error) from e

            delay = linear_backoff(attempt, base_delay)
            retry_after = getattr(e, "retry_after", None)
            if retry_after:
                delay = max(delay, min(retry_after, max_retry_after))
            logger.debug(f"Retry {attempt}/{max_attempts} after {delay:.2f}s: {e}")

            if on_retry:
                on_retry(attempt, e)

            stats.total_delay += delay
            await sleep(delay)

    raise RetryExhaustedError(max_attempts, last_error)
