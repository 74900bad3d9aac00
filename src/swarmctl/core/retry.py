"""Bounded retry with exponential backoff for transient provider failures.

Only ProviderUnavailable is retried. Every other exception propagates on the
first occurrence so task failures are never masked by retries.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from swarmctl.core.config import RetryConfig
from swarmctl.core.result import ProviderUnavailable

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times, and how patiently, a provider call is retried.

    Attributes:
        attempts: Total number of calls (1 disables retrying)
        initial_delay: Sleep before the second attempt, in seconds
        max_delay: Cap for a single sleep
        multiplier: Growth factor between consecutive sleeps
    """

    attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 8.0
    multiplier: float = 2.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            attempts=config.attempts,
            initial_delay=config.initial_delay,
            max_delay=config.max_delay,
            multiplier=config.multiplier,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        return min(self.max_delay, self.initial_delay * (self.multiplier ** (attempt - 1)))


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    describe: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``fn()``, retrying ProviderUnavailable with backoff.

    Args:
        fn: Zero-argument coroutine factory; called once per attempt
        policy: Retry policy
        describe: Short label used in log lines (e.g. "merge task-001")
        sleep: Injectable sleep, for tests

    Returns:
        The first successful result

    Raises:
        ProviderUnavailable: When every attempt was unavailable
    """
    last_error: ProviderUnavailable | None = None
    for attempt in range(1, policy.attempts + 1):
        try:
            return await fn()
        except ProviderUnavailable as exc:
            last_error = exc
            if attempt >= policy.attempts:
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s unavailable (attempt %d/%d), retrying in %.2fs: %s",
                describe,
                attempt,
                policy.attempts,
                delay,
                exc,
            )
            await sleep(delay)

    assert last_error is not None
    raise ProviderUnavailable(
        f"{describe} failed after {policy.attempts} attempts: {last_error.message}",
        context=last_error.context,
    ) from last_error


__all__ = ["RetryPolicy", "call_with_retry"]
