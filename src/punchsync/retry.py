"""Bounded exponential-backoff retry shared by the source and sink clients."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from src.punchsync.errors import SyncError

logger = logging.getLogger("punchsync.retry")

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff curve for one remote call.

    Attributes:
        max_attempts: Total attempts including the first one.
        base_delay_s: Delay before the second attempt.
        max_delay_s:  Hard cap on any single delay.
        multiplier:   Growth factor per attempt.
    """

    max_attempts: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    multiplier: float = 2.0

    @classmethod
    def from_ms(cls, max_attempts: int, base_ms: float, cap_ms: float) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, base_delay_s=base_ms / 1000.0, max_delay_s=cap_ms / 1000.0)

    def delay_for(self, attempt: int) -> float:
        """Delay after the ``attempt``-th failure (0-based)."""
        if attempt < 0:
            return 0.0
        return min(self.max_delay_s, self.base_delay_s * (self.multiplier**attempt))


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, SyncError) and exc.retryable


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    label: str = "call",
) -> T:
    """Run ``fn`` until it succeeds or the attempt budget is spent.

    Only SyncErrors whose ``should_retry`` check passes are retried; any other
    exception propagates immediately.  On exhaustion the last error is
    re-raised with ``attempts`` set on it.

    Args:
        fn:           Zero-argument coroutine factory; called once per attempt.
        policy:       Attempt budget and backoff curve.
        sleep:        Awaitable sleep, injectable for tests.
        should_retry: Predicate deciding whether an error earns another attempt.
        label:        Name used in log lines.

    Returns:
        Whatever ``fn`` returns on its first successful attempt.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except SyncError as exc:
            exc.attempts = attempt
            if not should_retry(exc) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt - 1)
            logger.debug(
                "%s failed (%s), attempt %d/%d, retrying in %.2fs",
                label, exc.kind, attempt, policy.max_attempts, delay,
            )
            await sleep(delay)
