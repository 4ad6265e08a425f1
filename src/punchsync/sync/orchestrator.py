"""Adaptive sync loop: device controller → transform → HR sink.

One cycle:
1. Window = [cursor, now]
2. Fetch raw records from the source client
3. Resolve unmapped employee codes through the sink directory (cached)
4. Transform, dropping unusable records with a logged reason
5. Suppress punches already accepted in an earlier window
6. Dispatch in batches: batches sequential with a short delay, events in a
   batch concurrent
7. Advance the cursor to the window end, regardless of per-event failures
8. Report the cycle to the health monitor and compute the next interval

A fetch that exhausted negotiation holds the cursor so the window is retried;
a cycle-level exception also holds the cursor and applies error backoff.

Only one cycle runs at a time: the loop schedules the next cycle after the
current one completes, and ``run_cycle()`` is serialized with a lock so the
HTTP "run now" endpoint cannot overlap a window in flight.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable

from src.punchsync.adapters.sink import SinkClient
from src.punchsync.adapters.source import SourceClient
from src.punchsync.base import (
    AttendanceEvent,
    BatchOutcome,
    CycleOutcome,
    CycleStatus,
    RawRecord,
    utc_now,
)
from src.punchsync.config_loader import PollingConfig, SinkConfig
from src.punchsync.errors import ProtocolNegotiationExhausted, SyncError
from src.punchsync.health import HealthMonitor
from src.punchsync.sync.cursor import SyncCursor
from src.punchsync.sync.dedup import DispatchDedupCache, event_key
from src.punchsync.sync.interval import IntervalState, clamp, next_interval_state
from src.punchsync.transform import TransformStage

logger = logging.getLogger("punchsync.sync.orchestrator")


class OrchestratorState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PROCESSING = "processing"
    SCHEDULING = "scheduling"
    STOPPED = "stopped"


def batch_size_for(count: int, configured: int) -> int:
    """Small loads go one event at a time, medium loads in fives."""
    if count <= 10:
        return 1
    if count <= 50:
        return 5
    return max(1, configured)


class SyncOrchestrator:
    """Run sync cycles and adapt the polling interval to what they find.

    Usage::

        orchestrator = SyncOrchestrator(source, sink, transform, cursor, health,
                                        config.polling, config.sink)
        task = asyncio.create_task(orchestrator.run_forever())
        ...
        orchestrator.stop()
        await task
    """

    def __init__(
        self,
        source: SourceClient,
        sink: SinkClient,
        transform: TransformStage,
        cursor: SyncCursor,
        health: HealthMonitor,
        polling: PollingConfig,
        sink_config: SinkConfig,
        directory_enabled: bool = True,
        dedup: DispatchDedupCache | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            source:            Device-side client.
            sink:              HR-side client.
            transform:         Record normalization stage.
            cursor:            Watermark, already loaded.
            health:            Health monitor to report cycles into.
            polling:           Interval policy.
            sink_config:       Batch size and inter-batch delays.
            directory_enabled: Look up unmapped codes in the sink directory.
            dedup:             Dispatch dedup cache (a fresh one by default).
            clock:             Wall clock (injectable for tests).
            sleep:             Awaitable sleep for inter-batch delays.
            monotonic:         Monotonic clock for cycle durations.
        """
        self.source = source
        self.sink = sink
        self.transform = transform
        self.cursor = cursor
        self.health = health
        self._polling = polling
        self._sink_config = sink_config
        self._directory_enabled = directory_enabled
        self._dedup = dedup or DispatchDedupCache()
        self._clock = clock
        self._sleep = sleep
        self._monotonic = monotonic

        self._interval = IntervalState.initial(polling)
        self._state = OrchestratorState.IDLE
        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._running = False
        self._directory_cache: dict[str, str | None] = {}

        self.cycle_count = 0
        self.last_outcome: CycleOutcome | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def interval(self) -> IntervalState:
        return self._interval

    def update_policy(self, polling: PollingConfig) -> None:
        """Adopt a reloaded polling policy from the next cycle on."""
        self._polling = polling
        self._interval = IntervalState(
            current_ms=clamp(self._interval.current_ms, polling),
            empty_polls=self._interval.empty_polls,
            consecutive_errors=self._interval.consecutive_errors,
        )

    def status(self) -> dict:
        last = self.last_outcome
        return {
            "state": self._state.value,
            "running": self._running,
            "cursor": self.cursor.value.isoformat(),
            "interval_ms": self._interval.current_ms,
            "empty_polls": self._interval.empty_polls,
            "consecutive_errors": self._interval.consecutive_errors,
            "cycle_count": self.cycle_count,
            "dedup_entries": len(self._dedup),
            "last_cycle": None if last is None else {
                "status": last.status.value,
                "window_start": last.window_start.isoformat() if last.window_start else None,
                "window_end": last.window_end.isoformat() if last.window_end else None,
                "fetched": last.fetched,
                "skipped": last.skipped,
                "duplicates": last.duplicates,
                "synced": last.synced,
                "failed": last.failed,
                "duration_ms": round(last.duration_ms, 1),
                "error": last.error,
            },
        }

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run_forever(self) -> None:
        """Cycle until ``stop()``; the next cycle starts only after the last one ends.

        A stop requested before the loop starts is honoured; the request is
        consumed when the loop exits, so the loop can be started again.
        """
        self._running = True
        if self._state is OrchestratorState.STOPPED:
            self._state = OrchestratorState.IDLE
        logger.info("Sync loop started (interval %.0fms)", self._interval.current_ms)
        try:
            while not self._stop_event.is_set():
                await self.run_cycle()
                if self._stop_event.is_set():
                    break
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval.current_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            self._stop_event.clear()
            self._state = OrchestratorState.STOPPED
            logger.info("Sync loop stopped after %d cycle(s)", self.cycle_count)

    def stop(self) -> None:
        """Request a stop; an in-flight cycle completes first."""
        self._stop_event.set()
        if not self._running and not self._lock.locked():
            self._state = OrchestratorState.STOPPED

    async def run_cycle(self) -> CycleOutcome:
        async with self._lock:
            return await self._cycle()

    async def _cycle(self) -> CycleOutcome:
        started = self._monotonic()
        self.health.record_cycle_start()
        window_start = self.cursor.value
        window_end = self._clock().replace(microsecond=0)
        outcome = CycleOutcome(status=CycleStatus.EMPTY, window_start=window_start, window_end=window_end)
        logger.debug("Sync cycle %s → %s", window_start.isoformat(), window_end.isoformat())

        try:
            self._state = OrchestratorState.FETCHING
            fetch = await self.source.fetch_window(window_start, window_end)
            outcome.fetched = len(fetch.records)

            if fetch.failed:
                outcome.status = CycleStatus.FETCH_FAILED
                outcome.error = "; ".join(fetch.reasons[-3:]) or "source unavailable"
                self.health.record_error(ProtocolNegotiationExhausted(fetch.reasons))
                logger.warning("Source unavailable; holding cursor at %s", window_start.isoformat())
            elif not fetch.records:
                outcome.status = CycleStatus.EMPTY
                await self.cursor.advance(window_end)
            else:
                self._state = OrchestratorState.PROCESSING
                outcome.status = CycleStatus.ACTIVE
                await self._process(fetch.records, outcome)
                await self.cursor.advance(window_end)
        except Exception as exc:
            outcome.status = CycleStatus.ERROR
            outcome.error = str(exc) or type(exc).__name__
            self.health.record_error(exc)
            logger.error("Sync cycle failed: %s", outcome.error, exc_info=True)

        outcome.duration_ms = (self._monotonic() - started) * 1000.0
        self._schedule(outcome)
        self.health.record_cycle_end(outcome)
        self.cycle_count += 1
        self.last_outcome = outcome
        self._state = OrchestratorState.STOPPED if self._stop_event.is_set() else OrchestratorState.IDLE
        return outcome

    def _schedule(self, outcome: CycleOutcome) -> None:
        self._state = OrchestratorState.SCHEDULING
        hour = self._clock().astimezone(self.transform.tz).hour
        previous = self._interval
        self._interval = next_interval_state(previous, outcome.status, hour, self._polling)
        if self._interval.current_ms != previous.current_ms:
            logger.info(
                "Poll interval %.0fms → %.0fms (%s, empty=%d, errors=%d)",
                previous.current_ms, self._interval.current_ms, outcome.status.value,
                self._interval.empty_polls, self._interval.consecutive_errors,
            )
        logger.debug("Next sync in %.0fms", self._interval.current_ms)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def push(self, records: list[RawRecord]) -> CycleOutcome:
        """Transform and dispatch supplied records without touching cursor or interval."""
        async with self._lock:
            started = self._monotonic()
            outcome = CycleOutcome(status=CycleStatus.ACTIVE, fetched=len(records))
            await self._process(records, outcome)
            outcome.duration_ms = (self._monotonic() - started) * 1000.0
            return outcome

    async def _process(self, records: list[RawRecord], outcome: CycleOutcome) -> None:
        started = self._monotonic()
        resolved = await self.resolve_unmapped(records)
        result = self.transform.transform(records, resolved)
        outcome.skipped = len(result.skipped)

        events, outcome.duplicates = self._dedup.split(result.events)
        batch = await self.dispatch(events)
        outcome.add_batch(batch)

        elapsed = (self._monotonic() - started) * 1000.0
        rate = batch.synced / batch.attempted * 100 if batch.attempted else 0.0
        logger.info(
            "Synced %d/%d (%.1f%%) in %.0fms; %d skipped, %d duplicate(s)",
            batch.synced, batch.attempted, rate, elapsed, outcome.skipped, outcome.duplicates,
        )

    async def resolve_unmapped(self, records: list[RawRecord]) -> dict[str, str | None]:
        """Directory IDs for codes missing from the mapping table.

        Matches and definite misses are cached for the process lifetime.  A
        failed lookup ends the pass: nothing is cached for that code or the
        ones after it, and they are tried again next cycle.
        """
        if not self._directory_enabled:
            return {}
        for code in self.transform.unmapped_codes(records):
            if code in self._directory_cache:
                continue
            try:
                self._directory_cache[code] = await self.sink.find_employee(code)
            except SyncError as exc:
                logger.warning("Directory lookup stopped at %s (%s): %s", code, exc.kind, exc.message)
                break
        return self._directory_cache

    async def dispatch(self, events: list[AttendanceEvent]) -> BatchOutcome:
        """Post events in sequential batches; events within a batch run concurrently."""
        total = BatchOutcome()
        if not events:
            return total

        size = batch_size_for(len(events), self._sink_config.batch_size)
        base_delay = self._sink_config.rate_limit_delay_ms / 1000.0
        for start in range(0, len(events), size):
            batch = events[start:start + size]
            results = await self.sink.post_batch(batch)
            for result in results:
                if result.ok:
                    self._dedup.mark_seen(event_key(result.event))
            outcome = BatchOutcome.from_results(results)
            total.merge(outcome)

            if start + size >= len(events):
                break
            delay = base_delay
            if outcome.rate_limited:
                pause = min(
                    outcome.retry_after if outcome.retry_after is not None else base_delay,
                    self._sink_config.max_rate_limit_pause_seconds,
                )
                delay = max(delay, pause)
                logger.warning("Sink rate limit hit; pausing %.1fs before next batch", delay)
            await self._sleep(delay)
        return total
