"""
schemabus.tier1_runtime.retry
──────────────────────────────
Bounded retry/backoff policy with jitter, backed by Tenacity. Classifies
errors as retryable or non-retryable: a payload that failed its schema or a
message that could not be parsed will fail the same way on every attempt.

Usage:
    @retry_policy(max_attempts=3)
    async def handle(payload, delivery):
        ...
"""
from __future__ import annotations

import functools
from collections.abc import Callable
from typing import Any, Type

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from schemabus.tier0_core.errors import (
    IncompatibleSchemaError,
    InvalidSchemaError,
    MalformedMessageError,
    NotFoundError,
    ValidationError,
)

# Errors that are NEVER retried regardless of policy
_NON_RETRYABLE: tuple[Type[BaseException], ...] = (
    ValidationError,
    MalformedMessageError,
    NotFoundError,
    IncompatibleSchemaError,
    InvalidSchemaError,
)


def is_retryable(exc: BaseException) -> bool:
    """Return True if the exception should be retried."""
    return not isinstance(exc, _NON_RETRYABLE)


def retry_policy(
    max_attempts: int = 3,
    min_wait: float = 0.5,
    max_wait: float = 10.0,
    jitter: float = 1.0,
    on: list[Type[Exception]] | None = None,
) -> Callable:
    """
    Decorator applying exponential backoff with jitter to an async callable.

    Args:
        max_attempts: Total number of attempts (including first).
        min_wait:     Minimum wait seconds between retries.
        max_wait:     Maximum wait seconds between retries.
        jitter:       Maximum random seconds added to each wait.
        on:           Specific exception types to retry on. If None, retries
                      on everything except the non-retryable bus errors.

    The last exception is re-raised once attempts are exhausted.
    """
    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            if on:
                retry_on = retry_if_exception_type(tuple(on))
            else:
                retry_on = retry_if_exception(is_retryable)

            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(min=min_wait, max=max_wait) + wait_random(0, jitter),
                retry=retry_on,
                reraise=True,
            ):
                with attempt:
                    return await fn(*args, **kwargs)

        return wrapper
    return decorator


__all__ = ["retry_policy", "is_retryable"]
