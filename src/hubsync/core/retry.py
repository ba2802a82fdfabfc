"""Retry with exponential backoff for remote store calls.

``RetryableRemoteCall`` wraps an async operation. Transient failures
(see ``errors.is_transient``) are retried with capped exponential
backoff; permanent failures and the last transient failure propagate
unchanged. The budget counts attempts: with ``attempts=3`` the operation
runs at most three times and sleeps twice (0.3s, then 0.6s).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import TypeVar

from ..errors import is_transient
from .async_utils import run_sync_limited

T = TypeVar("T")
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters.

    Attributes:
        attempts: Total number of calls, including the first.
        base_delay: Delay in seconds before the second attempt.
        factor: Multiplier applied to the delay after each retry.
        max_delay: Upper bound for any single delay.
    """

    attempts: int = 3
    base_delay: float = 0.3
    factor: float = 2.0
    max_delay: float = 3.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    def delays(self) -> Iterator[float]:
        """Yield the sleep before each retry (``attempts - 1`` values)."""
        delay = self.base_delay
        for _ in range(self.attempts - 1):
            yield min(delay, self.max_delay)
            delay = min(delay * self.factor, self.max_delay)

    @classmethod
    def from_config(cls, config) -> RetryPolicy:
        return cls(
            attempts=config.retry_attempts,
            base_delay=config.retry_base_delay,
            factor=config.retry_factor,
            max_delay=config.retry_max_delay,
        )


class RetryableRemoteCall:
    """Run async operations under a ``RetryPolicy``.

    Args:
        policy: Backoff parameters. Defaults to ``RetryPolicy()``.
        sleep: Awaitable sleep function, replaceable in tests.
        classify: Predicate deciding whether an exception is retryable.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        classify: Callable[[BaseException], bool] = is_transient,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._classify = classify

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        label: str = "remote call",
    ) -> T:
        """Call *operation* until it succeeds or the budget is spent.

        Raises:
            Exception: The permanent error, or the last transient error
                once all attempts are used.
        """
        delays = self.policy.delays()
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as exc:
                if not self._classify(exc):
                    raise
                delay = next(delays, None)
                if delay is None:
                    logger.error(
                        "%s failed after %d attempts: %s", label, attempt, exc
                    )
                    raise
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                    label,
                    attempt,
                    self.policy.attempts,
                    delay,
                    exc,
                )
                await self._sleep(delay)
                attempt += 1


async def call_store(
    retry: RetryableRemoteCall,
    func: Callable[..., T],
    *args,
    **kwargs,
) -> T:
    """Run a synchronous store method in a worker thread under *retry*."""
    return await retry.run(
        lambda: run_sync_limited(func, *args, **kwargs),
        label=getattr(func, "__name__", "store call"),
    )


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    label: str = "remote call",
) -> T:
    """Function form of ``RetryableRemoteCall(policy).run(operation)``."""
    return await RetryableRemoteCall(policy).run(operation, label=label)
