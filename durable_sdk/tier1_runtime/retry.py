"""
durable_sdk.tier1_runtime.retry
────────────────────────────────
Standard retry/backoff policy with jitter, backed by Tenacity.

The in-process job queue uses job_retrying() as its native redelivery
policy: an activity that raises is retried here, never inside the engine.
Errors that cannot succeed on a second attempt are never retried.

Usage:
    @retry_policy(max_attempts=5)
    async def post_event(): ...
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

from durable_sdk.tier0_core.errors import DefinitionError, EncodingError

# Errors that are NEVER retried regardless of policy
_NON_RETRYABLE: tuple[type[BaseException], ...] = (EncodingError, DefinitionError)


def _is_retryable(exc: BaseException) -> bool:
    """Return True if the exception should be retried."""
    return not isinstance(exc, _NON_RETRYABLE)


def _retrying(
    max_attempts: int,
    min_wait: float,
    max_wait: float,
    jitter: float,
    on: list[Type[Exception]] | None = None,
) -> AsyncRetrying:
    if on:
        retry_on = retry_if_exception_type(tuple(on))
    else:
        retry_on = retry_if_exception(_is_retryable)
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(min=min_wait, max=max_wait) + wait_random(0, jitter),
        retry=retry_on,
        reraise=True,
    )


def job_retrying(max_attempts: int | None = None) -> AsyncRetrying:
    """Redelivery policy for queued jobs, sized from DurableConfig."""
    from durable_sdk.tier0_core.config import get_config

    cfg = get_config()
    return _retrying(
        max_attempts=max_attempts or cfg.job_max_attempts,
        min_wait=cfg.job_backoff_min,
        max_wait=cfg.job_backoff_max,
        jitter=min(1.0, cfg.job_backoff_max),
    )


def retry_policy(
    max_attempts: int = 3,
    min_wait: float = 0.5,
    max_wait: float = 10.0,
    jitter: float = 1.0,
    on: list[Type[Exception]] | None = None,
) -> Callable:
    """
    Decorator applying exponential backoff with jitter to a coroutine function.

    Args:
        max_attempts: Total number of attempts (including first).
        min_wait:     Minimum wait seconds between retries.
        max_wait:     Maximum wait seconds between retries.
        jitter:       Maximum random seconds added to each wait.
        on:           Specific exception types to retry on. If None, retries
                      everything except the engine's non-retryable errors.
    """
    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            async for attempt in _retrying(max_attempts, min_wait, max_wait, jitter, on):
                with attempt:
                    return await fn(*args, **kwargs)

        return wrapper
    return decorator


__all__ = ["retry_policy", "job_retrying"]
