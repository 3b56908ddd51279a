"""
Tasseo Engine - Bounded In-Attempt Retry

tenacity-based retry for calls that can fail transiently inside one pipeline
attempt: artifact download, classifier, first/second interpretation stage,
rejection writer and ledger RPCs.

Only exceptions classified by `is_transient` are retried. Everything else
propagates immediately. When the budget is spent the last exception is
re-raised unchanged so the pipeline can compensate and the queue can redeliver.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from tasseo.config import Settings, get_settings

from .errors import is_transient

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and exponential delay bounds (seconds)."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    retry_on: Callable[[BaseException], bool] = field(default=is_transient, compare=False)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
        )

    def only_when(self, predicate: Callable[[BaseException], bool]) -> "RetryPolicy":
        return replace(self, retry_on=predicate)

    def _kwargs(self) -> dict[str, Any]:
        return dict(
            retry=retry_if_exception(self.retry_on),
            stop=stop_after_attempt(self.max_attempts),
            # 0-20% jitter over the exponential base
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay)
            + wait_random(0, self.base_delay * 0.2),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(**self._kwargs())


NO_DELAY = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


async def call_with_retry(
    policy: RetryPolicy,
    operation: str,
    func: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    """
    Await `func(*args, **kwargs)` under `policy`.

    Args:
        policy: Attempt budget and delays
        operation: Short name used in the exhaustion log line
        func: Coroutine function to call

    Returns:
        Whatever `func` returns on the first successful attempt
    """
    try:
        async for attempt in policy.retrying():
            with attempt:
                return await func(*args, **kwargs)
    except Exception as exc:
        if policy.retry_on(exc):
            logger.error(
                "retry_exhausted operation=%s attempts=%s error=%s",
                operation,
                policy.max_attempts,
                exc,
            )
        raise
    raise RuntimeError(f"retry loop for {operation} ended without a result")  # pragma: no cover


def with_retry(policy: RetryPolicy | None = None) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator form of `call_with_retry` for sync or async callables.

    Args:
        policy: Attempt budget; defaults to the configured RETRY_* settings

    Returns:
        Decorated function with retry logic
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            active = policy or RetryPolicy.from_settings()
            return retry(**active._kwargs())(func)(*args, **kwargs)

        return wrapper

    return decorator
