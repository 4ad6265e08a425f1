"""Tests for the sync cycle: cursor handling, batching, dedup and scheduling."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from src.punchsync.adapters.sink import SinkClient
from src.punchsync.adapters.source import FetchResult
from src.punchsync.base import (
    AttendanceEvent,
    CycleStatus,
    EventResult,
    RawRecord,
    ResultKind,
)
from src.punchsync.config_loader import SyncConfig
from src.punchsync.errors import AuthUnavailable, RateLimitError, ServerError
from src.punchsync.health import HealthMonitor, MemorySample
from src.punchsync.sync.cursor import SyncCursor
from src.punchsync.sync.dedup import DispatchDedupCache
from src.punchsync.sync.orchestrator import (
    OrchestratorState,
    SyncOrchestrator,
    batch_size_for,
)
from src.punchsync.tests.conftest import (
    ATTENDANCE_URL,
    EMPLOYEE_URL,
    NOW,
    FakeClock,
    MemoryStateStore,
    RecordingSleep,
    mock_client,
)
from src.punchsync.transform import TransformStage

MAPPED = [f"E100{i}" for i in range(1, 9)]
UNMAPPED = ["E9001", "E9002"]


def _records(codes: list[str]) -> list[RawRecord]:
    return [
        RawRecord.from_mapping({"EmployeeCode": code, "LogDate": f"2026-02-23 13:{i:02d}:00", "Direction": "in"})
        for i, code in enumerate(codes)
    ]


async def _accept_all(events: list[AttendanceEvent]) -> list[EventResult]:
    return [EventResult(event=e, kind=ResultKind.SUCCESS) for e in events]


def _memory() -> MemorySample:
    return MemorySample(rss_mb=64.0, system_mb=8192.0, percent=0.8)


class Harness:
    """Orchestrator wired to mock clients and a real transform stage."""

    def __init__(self, sync_config: SyncConfig, employee_map: dict[str, str]) -> None:
        self.clock = FakeClock()
        self.sleep = RecordingSleep()
        self.store = MemoryStateStore()
        self.source = MagicMock()
        self.source.fetch_window = AsyncMock(return_value=FetchResult())
        self.sink = MagicMock()
        self.sink.post_batch = AsyncMock(side_effect=_accept_all)
        self.sink.find_employee = AsyncMock(return_value=None)
        self.health = HealthMonitor(sync_config.health, memory_probe=_memory, clock=self.clock)
        self.cursor = SyncCursor(NOW - timedelta(hours=1), self.store)
        self.orchestrator = SyncOrchestrator(
            source=self.source,
            sink=self.sink,
            transform=TransformStage(employee_map, sync_config.transform),
            cursor=self.cursor,
            health=self.health,
            polling=sync_config.polling,
            sink_config=sync_config.sink,
            dedup=DispatchDedupCache(100),
            clock=self.clock,
            sleep=self.sleep,
        )

    def returns(self, records: list[RawRecord]) -> None:
        self.source.fetch_window.return_value = FetchResult(records=records, strategy="json", attempts=1)

    def dispatched(self) -> list[AttendanceEvent]:
        return [e for call in self.sink.post_batch.await_args_list for e in call.args[0]]


@pytest.fixture
def harness(sync_config: SyncConfig, employee_map: dict[str, str]) -> Harness:
    return Harness(sync_config, employee_map)


class TestBatchSize:
    def test_thresholds(self) -> None:
        assert batch_size_for(1, 10) == 1
        assert batch_size_for(10, 10) == 1
        assert batch_size_for(11, 10) == 5
        assert batch_size_for(50, 10) == 5
        assert batch_size_for(51, 10) == 10
        assert batch_size_for(500, 25) == 25


class TestCycle:
    @pytest.mark.asyncio
    async def test_active_cycle_skips_unmappable(self, harness: Harness) -> None:
        """Ten records with two unmappable codes dispatch exactly eight events."""
        harness.returns(_records(MAPPED + UNMAPPED))
        outcome = await harness.orchestrator.run_cycle()

        assert outcome.status is CycleStatus.ACTIVE
        assert outcome.fetched == 10
        assert outcome.skipped == 2
        assert outcome.synced == 8
        assert outcome.failed == 0
        assert len(harness.dispatched()) == 8
        # eight single-event batches, a delay between each pair
        assert harness.sink.post_batch.await_count == 8
        assert harness.sleep.delays == [0.1] * 7
        assert harness.cursor.value == NOW
        assert harness.store.saved_cursors == [NOW]
        assert harness.orchestrator.interval.current_ms == 20000

    @pytest.mark.asyncio
    async def test_fetch_window_bounds(self, harness: Harness) -> None:
        harness.clock.now = NOW.replace(microsecond=123456)
        await harness.orchestrator.run_cycle()
        start, end = harness.source.fetch_window.await_args.args
        assert start == NOW - timedelta(hours=1)
        assert end == NOW

    @pytest.mark.asyncio
    async def test_empty_cycle_advances_cursor(self, harness: Harness) -> None:
        outcome = await harness.orchestrator.run_cycle()
        assert outcome.status is CycleStatus.EMPTY
        assert harness.cursor.value == NOW
        assert harness.orchestrator.interval.empty_polls == 1
        harness.sink.post_batch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fetch_failure_holds_cursor(self, harness: Harness) -> None:
        harness.source.fetch_window.return_value = FetchResult(failed=True, reasons=["json: HTTP 404"], attempts=1)
        outcome = await harness.orchestrator.run_cycle()

        assert outcome.status is CycleStatus.FETCH_FAILED
        assert harness.cursor.value == NOW - timedelta(hours=1)
        assert harness.store.saved_cursors == []
        assert harness.health.status().last_error["type"] == "ProtocolNegotiationExhausted"
        assert harness.orchestrator.interval.consecutive_errors == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_holds_cursor_and_backs_off(self, harness: Harness) -> None:
        harness.source.fetch_window.side_effect = RuntimeError("boom")
        outcome = await harness.orchestrator.run_cycle()

        assert outcome.status is CycleStatus.ERROR
        assert outcome.error == "boom"
        assert harness.cursor.value == NOW - timedelta(hours=1)
        assert harness.orchestrator.interval.consecutive_errors == 1
        assert harness.orchestrator.interval.current_ms == 30000
        assert harness.orchestrator.state is OrchestratorState.IDLE

    @pytest.mark.asyncio
    async def test_cursor_never_moves_backwards(self, harness: Harness) -> None:
        harness.clock.now = NOW - timedelta(hours=2)
        await harness.orchestrator.run_cycle()
        assert harness.cursor.value == NOW - timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_cursor_monotonic_over_many_cycles(self, harness: Harness) -> None:
        seen = [harness.cursor.value]
        offsets = [5, -30, 60, 0, -120, 90]
        for offset in offsets:
            harness.clock.now = NOW + timedelta(seconds=offset)
            await harness.orchestrator.run_cycle()
            seen.append(harness.cursor.value)
        assert seen == sorted(seen)

    @pytest.mark.asyncio
    async def test_failed_events_still_advance_cursor(self, harness: Harness) -> None:
        async def reject(events: list[AttendanceEvent]) -> list[EventResult]:
            return [EventResult(event=e, kind=ResultKind.SERVER, error=ServerError(status=503)) for e in events]

        harness.sink.post_batch.side_effect = reject
        harness.returns(_records(MAPPED[:2]))
        outcome = await harness.orchestrator.run_cycle()

        assert outcome.failed == 2
        assert harness.cursor.value == NOW

    @pytest.mark.asyncio
    async def test_health_receives_outcomes(self, harness: Harness) -> None:
        harness.returns(_records(MAPPED[:3]))
        await harness.orchestrator.run_cycle()
        snap = harness.health.status()
        assert snap.total_cycles == 1
        assert snap.synced_events == 3
        assert snap.status == "healthy"

    @pytest.mark.asyncio
    async def test_peak_hour_interval(self, harness: Harness) -> None:
        harness.clock.now = NOW.replace(hour=3, minute=45)  # 09:15 in Asia/Kolkata
        harness.orchestrator.cursor = SyncCursor(harness.clock.now - timedelta(minutes=5))
        harness.returns(_records(MAPPED[:1]))
        await harness.orchestrator.run_cycle()
        assert harness.orchestrator.interval.current_ms == 10000

    @pytest.mark.asyncio
    async def test_peak_hour_read_when_scheduling(self, harness: Harness) -> None:
        harness.clock.now = NOW.replace(hour=11, minute=29, second=50)  # 16:59:50 in Asia/Kolkata
        harness.orchestrator.cursor = SyncCursor(harness.clock.now - timedelta(minutes=5))

        async def slow_fetch(start, end) -> FetchResult:
            harness.clock.advance(20)  # the cycle runs past 17:00
            return FetchResult(records=_records(MAPPED[:1]), strategy="json")

        harness.source.fetch_window.side_effect = slow_fetch
        await harness.orchestrator.run_cycle()
        assert harness.orchestrator.interval.current_ms == 10000


class TestDispatch:
    @pytest.mark.asyncio
    async def test_medium_load_batches_of_five(self, harness: Harness) -> None:
        events = [
            AttendanceEvent(employee_id=f"ZP-{i}", timestamp=NOW + timedelta(seconds=i)) for i in range(30)
        ]
        outcome = await harness.orchestrator.dispatch(events)
        assert outcome.synced == 30
        assert [len(c.args[0]) for c in harness.sink.post_batch.await_args_list] == [5] * 6
        assert harness.sleep.delays == [0.1] * 5

    @pytest.mark.asyncio
    async def test_rate_limit_pauses_next_batch(self, harness: Harness) -> None:
        calls = {"n": 0}

        async def limited_first(events: list[AttendanceEvent]) -> list[EventResult]:
            calls["n"] += 1
            if calls["n"] == 1:
                error = RateLimitError(retry_after=120)
                return [EventResult(event=e, kind=ResultKind.RATE_LIMIT, error=error) for e in events]
            return await _accept_all(events)

        harness.sink.post_batch.side_effect = limited_first
        events = [AttendanceEvent(employee_id=f"ZP-{i}", timestamp=NOW) for i in range(3)]
        outcome = await harness.orchestrator.dispatch(events)

        assert outcome.synced == 2
        assert outcome.failed == 1
        assert outcome.rate_limited == 1
        # capped at max_rate_limit_pause_seconds
        assert harness.sleep.delays == [30, 0.1]

    @pytest.mark.asyncio
    async def test_no_delay_after_last_batch(self, harness: Harness) -> None:
        await harness.orchestrator.dispatch([AttendanceEvent(employee_id="ZP-1", timestamp=NOW)])
        assert harness.sleep.delays == []


class TestDedup:
    @pytest.mark.asyncio
    async def test_overlapping_window_is_not_resent(self, harness: Harness) -> None:
        harness.returns(_records(MAPPED))
        await harness.orchestrator.run_cycle()
        harness.clock.advance(20)
        second = await harness.orchestrator.run_cycle()

        assert second.duplicates == 8
        assert second.synced == 0
        assert len(harness.dispatched()) == 8

    @pytest.mark.asyncio
    async def test_failed_events_are_retried_next_window(self, harness: Harness) -> None:
        async def reject(events: list[AttendanceEvent]) -> list[EventResult]:
            return [EventResult(event=e, kind=ResultKind.NETWORK) for e in events]

        harness.sink.post_batch.side_effect = reject
        harness.returns(_records(MAPPED[:2]))
        await harness.orchestrator.run_cycle()

        harness.sink.post_batch.side_effect = _accept_all
        harness.clock.advance(20)
        second = await harness.orchestrator.run_cycle()
        assert second.duplicates == 0
        assert second.synced == 2


class TestDirectoryResolution:
    @pytest.mark.asyncio
    async def test_directory_match_is_used_and_cached(self, harness: Harness) -> None:
        harness.sink.find_employee.side_effect = lambda code: "ZP-900" if code == "E9001" else None
        harness.returns(_records(["E9001", "E9002"]))

        first = await harness.orchestrator.run_cycle()
        assert first.synced == 1
        assert first.skipped == 1
        assert harness.dispatched()[0].employee_id == "ZP-900"

        harness.clock.advance(20)
        await harness.orchestrator.run_cycle()
        assert harness.sink.find_employee.await_count == 2

    @pytest.mark.asyncio
    async def test_auth_unavailable_stops_lookups(self, harness: Harness) -> None:
        harness.sink.find_employee.side_effect = AuthUnavailable("revoked")
        harness.returns(_records(UNMAPPED))
        outcome = await harness.orchestrator.run_cycle()

        assert outcome.status is CycleStatus.ACTIVE
        assert outcome.skipped == 2
        assert harness.sink.find_employee.await_count == 1
        resolved = await harness.orchestrator.resolve_unmapped(_records(UNMAPPED))
        assert resolved == {}

    def _real_sink(self, harness: Harness, sync_config: SyncConfig, handler, tokens: MagicMock) -> SinkClient:
        sink = SinkClient(
            attendance_url=ATTENDANCE_URL,
            employee_url=EMPLOYEE_URL,
            tokens=tokens,
            config=sync_config.sink,
            directory=sync_config.directory,
            tz=sync_config.transform.tzinfo,
            http_client=mock_client(handler),
            sleep=harness.sleep,
            clock=harness.clock,
        )
        harness.orchestrator.sink = sink
        return sink

    @staticmethod
    def _tokens() -> MagicMock:
        tokens = MagicMock()
        tokens.get_valid_token = AsyncMock(return_value="tok-1")
        tokens.refresh_if_stale = AsyncMock(return_value="tok-2")
        return tokens

    @pytest.mark.asyncio
    async def test_rejected_token_refreshes_once_per_pass(self, harness: Harness, sync_config: SyncConfig) -> None:
        tokens = self._tokens()
        self._real_sink(harness, sync_config, lambda r: httpx.Response(401), tokens)

        resolved = await harness.orchestrator.resolve_unmapped(_records(UNMAPPED))

        assert resolved == {}
        assert tokens.refresh_if_stale.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_lookup_is_retried_next_cycle(self, harness: Harness, sync_config: SyncConfig) -> None:
        network_up = False

        def handler(request: httpx.Request) -> httpx.Response:
            if not network_up:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"response": {"result": [{"1": [{"EmployeeID": "ZP-42"}]}]}})

        self._real_sink(harness, sync_config, handler, self._tokens())

        assert await harness.orchestrator.resolve_unmapped(_records(UNMAPPED[:1])) == {}

        network_up = True
        assert await harness.orchestrator.resolve_unmapped(_records(UNMAPPED[:1])) == {"E9001": "ZP-42"}

    @pytest.mark.asyncio
    async def test_definite_miss_is_cached(self, harness: Harness, sync_config: SyncConfig) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"response": {"result": []}})

        self._real_sink(harness, sync_config, handler, self._tokens())
        assert await harness.orchestrator.resolve_unmapped(_records(UNMAPPED[:1])) == {"E9001": None}
        await harness.orchestrator.resolve_unmapped(_records(UNMAPPED[:1]))
        assert len(seen) == len(sync_config.directory.search_fields)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_stop_lets_cycle_finish(self, harness: Harness) -> None:
        async def fetch_then_stop(start, end) -> FetchResult:
            harness.orchestrator.stop()
            return FetchResult(records=_records(MAPPED[:1]), strategy="json")

        harness.source.fetch_window.side_effect = fetch_then_stop
        await asyncio.wait_for(harness.orchestrator.run_forever(), timeout=5)

        assert harness.orchestrator.cycle_count == 1
        assert harness.orchestrator.last_outcome.synced == 1
        assert harness.orchestrator.state is OrchestratorState.STOPPED
        assert harness.cursor.value == NOW

    @pytest.mark.asyncio
    async def test_stop_interrupts_wait(self, harness: Harness) -> None:
        task = asyncio.create_task(harness.orchestrator.run_forever())
        for _ in range(10):
            await asyncio.sleep(0)
        assert harness.orchestrator.cycle_count == 1
        harness.orchestrator.stop()
        await asyncio.wait_for(task, timeout=5)
        assert harness.orchestrator.state is OrchestratorState.STOPPED

    @pytest.mark.asyncio
    async def test_push_leaves_cursor_and_interval(self, harness: Harness) -> None:
        outcome = await harness.orchestrator.push(_records(MAPPED[:3]))
        assert outcome.synced == 3
        assert harness.cursor.value == NOW - timedelta(hours=1)
        assert harness.orchestrator.interval.empty_polls == 0
        assert harness.orchestrator.cycle_count == 0
        harness.source.fetch_window.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_status(self, harness: Harness) -> None:
        await harness.orchestrator.run_cycle()
        status = harness.orchestrator.status()
        assert status["state"] == "idle"
        assert status["cycle_count"] == 1
        assert status["last_cycle"]["status"] == "empty"
        assert status["cursor"] == NOW.isoformat()

    @pytest.mark.asyncio
    async def test_update_policy_clamps_and_keeps_counters(self, harness: Harness, sync_config: SyncConfig) -> None:
        await harness.orchestrator.run_cycle()
        assert harness.orchestrator.interval.empty_polls == 1

        harness.orchestrator.update_policy(
            replace(sync_config.polling, base_interval_ms=40000, min_interval_ms=30000, max_interval_ms=60000)
        )
        assert harness.orchestrator.interval.current_ms == 30000
        assert harness.orchestrator.interval.empty_polls == 1

        harness.returns(_records(MAPPED[:1]))
        await harness.orchestrator.run_cycle()
        assert harness.orchestrator.interval.current_ms == 40000
