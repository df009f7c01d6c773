"""Retry decorator with exponential backoff for provider calls.

Example:
    from cirrus.retry import on_error_code, retry

    @retry(on=on_error_code("RequestLimitExceeded", "Throttling"))
    async def describe(ec2, **kwargs):
        return await ec2.describe_instances(**kwargs)
"""

from __future__ import annotations

import asyncio
import functools
import random
from collections.abc import Awaitable, Callable
from typing import Any, ParamSpec, TypeVar

from loguru import logger

P = ParamSpec("P")
T = TypeVar("T")

RetryPredicate = Callable[[Exception], bool]


def retry(
    on: type[Exception] | tuple[type[Exception], ...] | RetryPredicate = Exception,
    max_attempts: int = 5,
    base_delay: float = 1.0,
    exponential_base: float = 2.0,
    max_delay: float = 30.0,
    jitter: bool = True,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator that retries async functions with exponential backoff.

    Args:
        on: When to retry. An exception class, a tuple of them, or a
            predicate over the raised exception.
        max_attempts: Maximum number of attempts (including the first one).
        base_delay: Initial delay in seconds before first retry.
        exponential_base: Multiplier for exponential backoff.
            Delay formula: min(base_delay * (exponential_base ** attempt), max_delay)
        max_delay: Maximum delay cap in seconds.
        jitter: Add up to 10% random jitter so concurrent callers spread out.
    """
    if isinstance(on, type) and issubclass(on, Exception):
        should_retry: RetryPredicate = lambda e: isinstance(e, on)
    elif isinstance(on, tuple):
        should_retry = lambda e: isinstance(e, on)
    else:
        should_retry = on

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    has_retries_left = attempt < max_attempts - 1
                    if not (should_retry(e) and has_retries_left):
                        raise

                    delay = min(base_delay * (exponential_base**attempt), max_delay)
                    if jitter:
                        delay += random.uniform(0, delay * 0.1)

                    logger.warning(
                        f"Retry {attempt + 1}/{max_attempts} of {func.__qualname__} "
                        f"after {type(e).__name__}: {e}. Waiting {delay:.1f}s..."
                    )
                    await asyncio.sleep(delay)
            raise AssertionError("unreachable")

        return wrapper  # type: ignore[return-value]

    return decorator


def error_code(e: Exception) -> str | None:
    """Error code of a botocore ClientError or a TransportError, if any."""
    response: Any = getattr(e, "response", None)
    if isinstance(response, dict):
        return response.get("Error", {}).get("Code")
    return getattr(e, "code", None)


def on_error_code(*codes: str) -> RetryPredicate:
    """Retry when the provider error code is one of codes.

    Example:
        @retry(on=on_error_code("RequestLimitExceeded"))
        async def api_call():
            ...
    """

    def predicate(e: Exception) -> bool:
        return error_code(e) in codes

    return predicate

