"""Retry decorator with exponential backoff for transient portal failures."""

import asyncio
from collections.abc import Callable, Coroutine
from functools import wraps
from typing import Any, ParamSpec, TypeVar

import structlog

from exbridge.utils.exceptions import APIError

P = ParamSpec("P")
T = TypeVar("T")

logger = structlog.get_logger(__name__)


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (0-based): base * 2**attempt, capped."""
    return min(base_delay * (2**attempt), max_delay)


def is_transient(error: Exception) -> bool:
    """Client errors (4xx) won't succeed on retry; transport errors and 5xx may."""
    if isinstance(error, APIError) and error.status_code is not None:
        return not 400 <= error.status_code < 500
    return True


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 60.0,
    exceptions: tuple[type[Exception], ...] = (APIError,),
) -> Callable[[Callable[P, Coroutine[Any, Any, T]]], Callable[P, Coroutine[Any, Any, T]]]:
    """Decorator that retries an async function with exponential backoff.

    Rate limit errors are not caught here: they are not ``APIError`` and are
    handled by the orchestrator, which owns the rate limiter penalty.

    Args:
        max_retries: Maximum number of retry attempts.
        base_delay: Base delay in seconds (doubles each retry).
        max_delay: Maximum delay between retries.
        exceptions: Tuple of exception types to catch and retry.

    Returns:
        Decorated function.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, T]]
    ) -> Callable[P, Coroutine[Any, Any, T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if not is_transient(e):
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            "Max retries exceeded",
                            function=func.__name__,
                            attempts=attempt + 1,
                            error=str(e),
                        )
                        raise

                    delay = backoff_delay(attempt, base_delay, max_delay)
                    logger.warning(
                        "Retrying after error",
                        function=func.__name__,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator
