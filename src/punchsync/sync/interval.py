"""Adaptive poll-interval policy.

The interval is an immutable IntervalState value produced by a pure
transition function, so the whole policy can be exercised without timers:

    state = IntervalState.initial(polling)
    state = next_interval_state(state, CycleStatus.EMPTY, hour=14, policy=polling)

Rules, in priority order:
    error    interval = min(max, base × factor^consecutive_errors)
    empty    after ``empty_polls_to_backoff`` empty polls, interval = min(max, interval × factor)
    active   interval = base
    peak     inside a peak-hour window the result is halved, not below min

The result is always clamped to [min, max].
"""

from __future__ import annotations

from dataclasses import dataclass

from src.punchsync.base import CycleStatus
from src.punchsync.config_loader import PollingConfig


@dataclass(frozen=True)
class IntervalState:
    """Current poll interval and the counters that drive it.

    Attributes:
        current_ms:         Delay before the next cycle.
        empty_polls:        Consecutive cycles that fetched nothing.
        consecutive_errors: Consecutive cycles that ended in a cycle-level error.
    """

    current_ms: float
    empty_polls: int = 0
    consecutive_errors: int = 0

    @classmethod
    def initial(cls, policy: PollingConfig) -> "IntervalState":
        return cls(current_ms=clamp(policy.base_interval_ms, policy))

    @property
    def current_seconds(self) -> float:
        return self.current_ms / 1000.0


def clamp(value: float, policy: PollingConfig) -> float:
    return max(policy.min_interval_ms, min(policy.max_interval_ms, value))


def error_backoff_ms(consecutive_errors: int, policy: PollingConfig) -> float:
    return min(
        policy.max_interval_ms,
        policy.base_interval_ms * policy.backoff_factor**consecutive_errors,
    )


def next_interval_state(
    state: IntervalState, status: CycleStatus, hour: int, policy: PollingConfig
) -> IntervalState:
    """Compute the state after a cycle that ended with ``status`` at local ``hour``.

    A FETCH_FAILED cycle counts as an empty poll: the source was unreachable
    but the failure was handled inside the fetch call.
    """
    if status is CycleStatus.ERROR:
        errors = state.consecutive_errors + 1
        empty = 0
        interval = error_backoff_ms(errors, policy)
    elif status is CycleStatus.ACTIVE:
        errors = 0
        empty = 0
        interval = policy.base_interval_ms
    else:
        errors = 0
        empty = state.empty_polls + 1
        interval = state.current_ms
        if empty >= policy.empty_polls_to_backoff:
            interval = min(policy.max_interval_ms, interval * policy.backoff_factor)

    if policy.is_peak_hour(hour) and interval > policy.min_interval_ms:
        interval = max(policy.min_interval_ms, interval / 2)

    return IntervalState(current_ms=clamp(interval, policy), empty_polls=empty, consecutive_errors=errors)
