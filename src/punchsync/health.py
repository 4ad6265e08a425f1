"""Cycle metrics aggregation and healthy/degraded classification.

The monitor only observes: the orchestrator reports into it and the HTTP
surface reads snapshots from it.  Nothing here can influence scheduling.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable

import psutil

from src.punchsync.base import CycleOutcome, utc_now
from src.punchsync.config_loader import HealthConfig

logger = logging.getLogger("punchsync.health")

_MB = 1024 * 1024


@dataclass
class MemorySample:
    rss_mb: float
    system_mb: float
    percent: float


def read_memory() -> MemorySample:
    """Current process memory via psutil."""
    process = psutil.Process()
    return MemorySample(
        rss_mb=process.memory_info().rss / _MB,
        system_mb=psutil.virtual_memory().total / _MB,
        percent=process.memory_percent(),
    )


def format_uptime(seconds: float) -> str:
    minutes, _ = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    return f"{days}d {hours}h {minutes}m"


@dataclass
class HealthSnapshot:
    """Point-in-time view of engine health.

    Attributes:
        status:                  ``healthy`` or ``degraded``.
        uptime:                  Human-readable time since start/reset.
        memory_rss_mb:           Current resident set size.
        memory_percent:          RSS as a percentage of system memory.
        peak_memory_mb:          Highest RSS seen at a cycle end.
        total_cycles:            Completed cycles.
        successful_cycles:       Cycles that ended EMPTY or ACTIVE.
        failed_cycles:           Cycles that ended FETCH_FAILED or ERROR.
        cycle_success_rate:      successful / total, percent.
        average_cycle_ms:        Running mean cycle duration.
        total_events:            Events dispatched (synced + failed).
        synced_events:           Events the sink accepted.
        failed_events:           Events the sink did not accept.
        skipped_records:         Raw records dropped by the transform stage.
        event_success_rate:      synced / total_events, percent.
        last_error:              ``{message, type, timestamp}`` of the latest error.
        timestamp:               When the snapshot was taken.
    """

    status: str
    uptime: str
    memory_rss_mb: float
    memory_percent: float
    peak_memory_mb: float
    total_cycles: int
    successful_cycles: int
    failed_cycles: int
    cycle_success_rate: float
    average_cycle_ms: float
    total_events: int
    synced_events: int
    failed_events: int
    skipped_records: int
    event_success_rate: float
    last_error: dict | None = None
    timestamp: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class _Counters:
    total_cycles: int = 0
    successful_cycles: int = 0
    failed_cycles: int = 0
    average_cycle_ms: float = 0.0
    synced_events: int = 0
    failed_events: int = 0
    skipped_records: int = 0
    peak_memory_mb: float = 0.0
    last_error: dict | None = field(default=None)


class HealthMonitor:
    """Aggregate cycle outcomes into a health snapshot.

    Args:
        config:       Memory and failure-rate thresholds.
        memory_probe: Returns a MemorySample (psutil by default, injectable for tests).
        clock:        Wall clock for timestamps.
        monotonic:    Monotonic clock for durations and uptime.
    """

    def __init__(
        self,
        config: HealthConfig,
        memory_probe: Callable[[], MemorySample] = read_memory,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._memory = memory_probe
        self._clock = clock
        self._monotonic = monotonic
        self._started = monotonic()
        self._cycle_started: float | None = None
        self._c = _Counters()

    def record_cycle_start(self) -> None:
        self._cycle_started = self._monotonic()

    def record_cycle_end(self, outcome: CycleOutcome) -> None:
        duration = outcome.duration_ms
        if not duration and self._cycle_started is not None:
            duration = (self._monotonic() - self._cycle_started) * 1000.0
        self._cycle_started = None

        c = self._c
        c.total_cycles += 1
        c.average_cycle_ms += (duration - c.average_cycle_ms) / c.total_cycles
        if outcome.succeeded:
            c.successful_cycles += 1
        else:
            c.failed_cycles += 1
        c.synced_events += outcome.synced
        c.failed_events += outcome.failed
        c.skipped_records += outcome.skipped
        c.peak_memory_mb = max(c.peak_memory_mb, self._memory().rss_mb)

        if outcome.synced or outcome.failed:
            logger.info(
                "Cycle finished in %.0fms: %d synced, %d failed",
                duration, outcome.synced, outcome.failed,
            )

    def record_error(self, error: BaseException) -> None:
        self._c.last_error = {
            "message": str(error),
            "type": type(error).__name__,
            "timestamp": self._clock().isoformat(),
        }

    def is_healthy(self, memory: MemorySample | None = None) -> bool:
        memory = memory or self._memory()
        memory_ok = memory.percent < self._config.memory_threshold * 100
        c = self._c
        failures_ok = c.total_cycles == 0 or c.failed_cycles < c.total_cycles * self._config.max_failure_rate
        return memory_ok and failures_ok

    def status(self) -> HealthSnapshot:
        memory = self._memory()
        c = self._c
        total_events = c.synced_events + c.failed_events
        return HealthSnapshot(
            status="healthy" if self.is_healthy(memory) else "degraded",
            uptime=format_uptime(self._monotonic() - self._started),
            memory_rss_mb=round(memory.rss_mb, 2),
            memory_percent=round(memory.percent, 2),
            peak_memory_mb=round(max(c.peak_memory_mb, memory.rss_mb), 2),
            total_cycles=c.total_cycles,
            successful_cycles=c.successful_cycles,
            failed_cycles=c.failed_cycles,
            cycle_success_rate=round(c.successful_cycles / c.total_cycles * 100, 1) if c.total_cycles else 0.0,
            average_cycle_ms=round(c.average_cycle_ms, 1),
            total_events=total_events,
            synced_events=c.synced_events,
            failed_events=c.failed_events,
            skipped_records=c.skipped_records,
            event_success_rate=round(c.synced_events / total_events * 100, 1) if total_events else 0.0,
            last_error=dict(c.last_error) if c.last_error else None,
            timestamp=self._clock().isoformat(),
        )

    def reset(self) -> None:
        self._c = _Counters()
        self._started = self._monotonic()
        self._cycle_started = None

    def log_report(self) -> HealthSnapshot:
        """Log the current snapshot; degraded status logs at WARNING."""
        snap = self.status()
        level = logging.INFO if snap.status == "healthy" else logging.WARNING
        logger.log(
            level,
            "Health %s: uptime %s, %d cycles (%.1f%% ok, avg %.0fms), %d/%d events synced, rss %.1fMB",
            snap.status, snap.uptime, snap.total_cycles, snap.cycle_success_rate,
            snap.average_cycle_ms, snap.synced_events, snap.total_events, snap.memory_rss_mb,
        )
        return snap
