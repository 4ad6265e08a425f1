"""Tests for source dialect negotiation, retries and response unwrapping."""

from __future__ import annotations

import json
from dataclasses import replace
from datetime import timedelta
from typing import Callable

import httpx
import pytest

from src.punchsync.adapters.source import SourceClient, unwrap_records
from src.punchsync.config_loader import SourceConfig, SyncConfig
from src.punchsync.tests.conftest import NOW, SOURCE_URL, RecordingSleep, mock_client

WINDOW_START = NOW - timedelta(hours=1)


def _client(
    handler: Callable[[httpx.Request], httpx.Response],
    config: SourceConfig,
    sleep: RecordingSleep,
    sync_config: SyncConfig,
) -> SourceClient:
    return SourceClient(
        base_url=SOURCE_URL,
        username="admin",
        password="secret",
        config=config,
        tz=sync_config.transform.tzinfo,
        http_client=mock_client(handler),
        sleep=sleep,
    )


@pytest.fixture
def source_config(sync_config: SyncConfig) -> SourceConfig:
    return replace(sync_config.source, wsdl_discovery=False)


def _is_json(request: httpx.Request) -> bool:
    return request.url.path.endswith("/GetTransactionData")


def _soap_version(request: httpx.Request) -> str:
    return "1.2" if "soap+xml" in request.headers.get("content-type", "") else "1.1"


class TestNegotiation:
    @pytest.mark.asyncio
    async def test_json_dialect_first(
        self, source_config: SourceConfig, recording_sleep: RecordingSleep,
        sync_config: SyncConfig, essl_transactions: dict,
    ) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=essl_transactions)

        client = _client(handler, source_config, recording_sleep, sync_config)
        result = await client.fetch_window(WINDOW_START, NOW)

        assert not result.failed
        assert result.strategy == "json"
        assert len(result.records) == 4
        assert result.records[0].employee_code == "E1001"
        assert len(seen) == 1
        body = json.loads(seen[0].content)
        assert body["username"] == "admin"
        # 08:30 UTC is 14:00 in Asia/Kolkata
        assert body["toDate"] == "2026-02-23 14:00:00"
        assert body["fromDate"] == "2026-02-23 13:00:00"

    @pytest.mark.asyncio
    async def test_third_combination_wins_after_exactly_three_attempts(
        self, source_config: SourceConfig, recording_sleep: RecordingSleep,
        sync_config: SyncConfig, soap_fault_xml: bytes, soap_rows_xml: bytes,
    ) -> None:
        """JSON 404, SOAP 1.1 fault, SOAP 1.2 answers: three requests in total."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if _is_json(request):
                return httpx.Response(404)
            if _soap_version(request) == "1.1":
                return httpx.Response(500, content=soap_fault_xml)
            return httpx.Response(200, content=soap_rows_xml.replace(b"GetTransactionsLog", b"GetTransactionData"))

        client = _client(handler, source_config, recording_sleep, sync_config)
        result = await client.fetch_window(WINDOW_START, NOW)

        assert len(seen) == 3
        assert result.strategy == "soap1.2:GetTransactionData"
        assert [r.employee_code for r in result.records] == ["E1001", "E1002"]
        assert result.reasons == []
        assert recording_sleep.delays == []
        assert client.last_strategy == "soap1.2:GetTransactionData"

    @pytest.mark.asyncio
    async def test_soap_11_request_shape(
        self, source_config: SourceConfig, recording_sleep: RecordingSleep,
        sync_config: SyncConfig, soap_rows_xml: bytes,
    ) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if _is_json(request):
                return httpx.Response(404)
            return httpx.Response(200, content=soap_rows_xml.replace(b"GetTransactionsLog", b"GetTransactionData"))

        client = _client(handler, source_config, recording_sleep, sync_config)
        await client.fetch_window(WINDOW_START, NOW)

        soap_request = seen[1]
        assert str(soap_request.url) == SOURCE_URL
        assert soap_request.headers["SOAPAction"] == '"http://tempuri.org/GetTransactionData"'
        assert soap_request.headers["content-type"] == "text/xml; charset=utf-8"
        assert b"<fromDate>2026-02-23 13:00:00</fromDate>" in soap_request.content

    @pytest.mark.asyncio
    async def test_non_transient_failures_are_not_retried(
        self, source_config: SourceConfig, recording_sleep: RecordingSleep, sync_config: SyncConfig,
    ) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(404)

        client = _client(handler, source_config, recording_sleep, sync_config)
        result = await client.fetch_window(WINDOW_START, NOW)

        assert result.failed
        assert result.records == []
        assert result.attempts == 1
        assert len(seen) == 1 + len(source_config.strategies)
        assert len(result.reasons) == len(seen)
        assert result.reasons[0] == "json: HTTP 404"
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_transient_failures_retry_with_backoff(
        self, source_config: SourceConfig, recording_sleep: RecordingSleep, sync_config: SyncConfig,
    ) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler, source_config, recording_sleep, sync_config)
        result = await client.fetch_window(WINDOW_START, NOW)

        per_pass = 1 + len(source_config.strategies)
        assert result.failed
        assert result.attempts == 3
        assert len(seen) == 3 * per_pass
        assert recording_sleep.delays == [1.0, 2.0]
        assert client.failed_requests == 1

    @pytest.mark.asyncio
    async def test_recovers_on_second_pass(
        self, source_config: SourceConfig, recording_sleep: RecordingSleep, sync_config: SyncConfig,
    ) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(503)
            if _is_json(request):
                return httpx.Response(200, json=[{"EmployeeCode": "E1001", "LogDate": "2026-02-23 13:59:00"}])
            return httpx.Response(404)

        client = _client(handler, source_config, recording_sleep, sync_config)
        result = await client.fetch_window(WINDOW_START, NOW)

        assert not result.failed
        assert result.attempts == 2
        assert len(result.records) == 1
        assert recording_sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_genuine_empty_poll(
        self, source_config: SourceConfig, recording_sleep: RecordingSleep, sync_config: SyncConfig,
    ) -> None:
        client = _client(lambda r: httpx.Response(200, json={"d": []}), source_config, recording_sleep, sync_config)
        result = await client.fetch_window(WINDOW_START, NOW)
        assert not result.failed
        assert result.records == []

    @pytest.mark.asyncio
    async def test_unexpected_shape_is_empty(
        self, source_config: SourceConfig, recording_sleep: RecordingSleep, sync_config: SyncConfig,
    ) -> None:
        client = _client(lambda r: httpx.Response(200, json=42), source_config, recording_sleep, sync_config)
        assert await client.fetch(WINDOW_START, NOW) == []


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_wsdl_prunes_and_substitutes_namespace(
        self, sync_config: SyncConfig, recording_sleep: RecordingSleep,
        service_wsdl: str, soap_rows_xml: bytes,
    ) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.method == "GET":
                return httpx.Response(200, text=service_wsdl)
            if _is_json(request):
                return httpx.Response(404)
            return httpx.Response(200, content=soap_rows_xml)

        client = _client(handler, sync_config.source, recording_sleep, sync_config)
        strategies = await client.strategies()
        assert [s.label for s in strategies] == [
            "json", "soap1.1:GetTransactionsLog", "soap1.2:GetTransactionsLog",
        ]

        result = await client.fetch_window(WINDOW_START, NOW)
        assert result.strategy == "soap1.1:GetTransactionsLog"
        soap_request = [r for r in seen if r.method == "POST"][1]
        assert soap_request.headers["SOAPAction"] == '"http://essl.example/api/GetTransactionsLog"'
        assert b"http://essl.example/api/" in soap_request.content
        # discovery ran once and was cached
        assert sum(1 for r in seen if r.method == "GET") == 1

    @pytest.mark.asyncio
    async def test_failed_discovery_is_cached(
        self, sync_config: SyncConfig, recording_sleep: RecordingSleep,
    ) -> None:
        gets: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            gets.append(request)
            return httpx.Response(404)

        client = _client(handler, sync_config.source, recording_sleep, sync_config)
        assert await client.discover() is None
        assert await client.discover() is None
        assert len(gets) == 1
        assert len(await client.strategies()) == 1 + len(sync_config.source.strategies)

    @pytest.mark.asyncio
    async def test_network_error_is_not_cached(
        self, sync_config: SyncConfig, recording_sleep: RecordingSleep, service_wsdl: str,
    ) -> None:
        gets: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            gets.append(request)
            if len(gets) == 1:
                raise httpx.ConnectError("down", request=request)
            return httpx.Response(200, text=service_wsdl)

        client = _client(handler, sync_config.source, recording_sleep, sync_config)
        assert await client.discover() is None
        description = await client.discover()
        assert description is not None
        assert description.namespace == "http://essl.example/api/"

    @pytest.mark.asyncio
    async def test_unreachable_discovery_asked_once_per_fetch(
        self, sync_config: SyncConfig, recording_sleep: RecordingSleep,
    ) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler, sync_config.source, recording_sleep, sync_config)
        result = await client.fetch_window(WINDOW_START, NOW)

        assert result.failed
        assert result.attempts == 3
        assert sum(1 for r in seen if r.method == "GET") == 1

        await client.fetch_window(WINDOW_START, NOW)
        assert sum(1 for r in seen if r.method == "GET") == 2


class TestProbe:
    @pytest.mark.asyncio
    async def test_probe_falls_back_to_get(
        self, source_config: SourceConfig, recording_sleep: RecordingSleep, sync_config: SyncConfig,
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200) if request.method == "GET" else httpx.Response(500)

        client = _client(handler, source_config, recording_sleep, sync_config)
        probe = await client.probe()
        assert probe == {"success": True, "method": "GET", "message": "service reachable"}

    @pytest.mark.asyncio
    async def test_probe_unreachable(
        self, source_config: SourceConfig, recording_sleep: RecordingSleep, sync_config: SyncConfig,
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("down", request=request)

        client = _client(handler, source_config, recording_sleep, sync_config)
        probe = await client.probe()
        assert probe["success"] is False
        assert probe["method"] is None


class TestUnwrapRecords:
    def test_plain_list(self) -> None:
        assert unwrap_records([{"EmployeeCode": "E1"}, "junk"]) == [{"EmployeeCode": "E1"}]

    def test_wrapped_list(self) -> None:
        assert unwrap_records({"data": [{"EmployeeCode": "E1"}]}) == [{"EmployeeCode": "E1"}]

    def test_nested_json_text(self) -> None:
        payload = {"d": '{"GetTransactionDataResult": "[{\\"EmployeeCode\\": \\"E1\\"}]"}'}
        assert unwrap_records(payload) == [{"EmployeeCode": "E1"}]

    def test_result_suffix_key(self) -> None:
        payload = {"GetTransactionsLogResult": [{"EmpCode": "E2"}], "status": "ok"}
        assert unwrap_records(payload) == [{"EmpCode": "E2"}]

    def test_single_bare_record(self) -> None:
        record = {"EmployeeCode": "E3", "LogDate": "2026-02-23 09:00:00"}
        assert unwrap_records(record) == [record]

    def test_empty_shapes(self) -> None:
        assert unwrap_records({}) == []
        assert unwrap_records("") == []
        assert unwrap_records([]) == []

    def test_unrecognised_shapes(self) -> None:
        assert unwrap_records(42) is None
        assert unwrap_records("Invalid credentials") is None
        assert unwrap_records({"status": "ok", "count": 0}) is None
