"""Retry utilities for handling transient gateway failures.

Provides a decorator for retrying async operations with exponential backoff.
The gateway wraps every HTTP request with it so that rate limiting and 5xx
responses never reach the engine unless retries are exhausted.

Key Exports:
    async_retry: Decorator for adding retry logic to async functions.

Example:
    >>> from devflow.exceptions import RemoteServiceError
    >>> from devflow.utils.retry import async_retry
    >>>
    >>> @async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(RemoteServiceError,))
    ... async def fetch_ref(pool, path):
    ...     return await pool.get(path)

Backoff Formula:
    delay = min(backoff_factor ** attempt_number, max_delay)
    For backoff_factor=2.0: 2s, 4s, 8s, 16s, ...
    An exception carrying a ``retry_after`` attribute raises the delay to at
    least that many seconds (still capped by max_delay).
"""

import asyncio
import functools
from collections.abc import Callable
from typing import Any, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


def async_retry(
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    max_delay: float = 60.0,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of attempts before giving up.
        backoff_factor: Base for exponential backoff calculation. The delay
            before attempt N+1 is backoff_factor^N seconds.
        exceptions: Exception types that trigger a retry. Other exceptions
            propagate immediately.
        max_delay: Upper bound for a single delay in seconds.

    Returns:
        A decorator function that wraps async functions with retry logic.

    Raises:
        The last caught exception if all retry attempts are exhausted.
        Exceptions not in the exceptions tuple are raised immediately.

    Note:
        Each retry is logged at WARNING level and exhausted retries at ERROR
        level.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_exception = None

            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt == max_attempts:
                        log.error(
                            "retry_exhausted",
                            function=func.__name__,
                            attempts=attempt,
                            error=str(e),
                        )
                        raise

                    delay = backoff_factor**attempt
                    retry_after = getattr(e, "retry_after", None)
                    if retry_after:
                        delay = max(delay, float(retry_after))
                    delay = min(delay, max_delay)

                    log.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

            if last_exception:
                raise last_exception
            raise RuntimeError("Retry logic error")

        return wrapper

    return decorator
