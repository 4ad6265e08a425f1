"""Shared fixtures and fakes for sync engine tests."""

from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import httpx
import pytest

from src.punchsync.base import CursorStore, Token, TokenStore
from src.punchsync.config_loader import PollingConfig, SyncConfig, load_sync_config
from src.punchsync.token_manager import TokenManager

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

# 2026-02-23 14:00 IST; outside both peak windows
NOW = datetime(2026, 2, 23, 8, 30, tzinfo=timezone.utc)

ACCOUNTS_URL = "https://accounts.test"
SOURCE_URL = "http://device.test/WebAPIService.asmx"
ATTENDANCE_URL = "https://people.test/people/api/attendance"
EMPLOYEE_URL = "https://people.test/api/forms/P_EmployeeView/records"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class MemoryStateStore(TokenStore, CursorStore):
    """In-memory token + cursor store that records every write."""

    def __init__(self, token: Token | None = None, cursor: datetime | None = None) -> None:
        self.token = token
        self.cursor = cursor
        self.saved_tokens: list[Token | None] = []
        self.saved_cursors: list[datetime] = []

    async def load_token(self) -> Token | None:
        return self.token

    async def save_token(self, token: Token | None) -> None:
        self.token = token
        self.saved_tokens.append(token)

    async def load_cursor(self) -> datetime | None:
        return self.cursor

    async def save_cursor(self, value: datetime) -> None:
        self.cursor = value
        self.saved_cursors.append(value)


class FakeClock:
    """Settable clock; call it to read the time."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    """httpx client whose requests are answered by ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def token_response(access: str = "fresh-access", expires_in: int = 3600, **extra) -> httpx.Response:
    body = {"access_token": access, "expires_in": expires_in, "token_type": "Bearer", **extra}
    return httpx.Response(200, json=body)


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the real sync config for tests."""
    return load_sync_config()


@pytest.fixture
def polling(sync_config: SyncConfig) -> PollingConfig:
    return sync_config.polling


@pytest.fixture
def off_peak_polling(sync_config: SyncConfig) -> PollingConfig:
    """Polling config with no peak windows."""
    return replace(sync_config.polling, peak_hours=[])


# ---------------------------------------------------------------------------
# Time / store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def valid_token() -> Token:
    return Token(
        access_token="live-access",
        refresh_token="refresh-1",
        expires_at=NOW + timedelta(hours=1),
    )


@pytest.fixture
def expired_token() -> Token:
    return Token(
        access_token="stale-access",
        refresh_token="refresh-1",
        expires_at=NOW - timedelta(minutes=1),
    )


def make_token_manager(
    handler: Callable[[httpx.Request], httpx.Response],
    clock: FakeClock,
    store: TokenStore | None = None,
    buffer_seconds: float = 300,
) -> TokenManager:
    return TokenManager(
        accounts_url=ACCOUNTS_URL,
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="http://localhost/callback",
        scope="ZohoPeople.attendance.ALL",
        store=store,
        expiry_buffer_seconds=buffer_seconds,
        http_client=mock_client(handler),
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Fixture file loaders
# ---------------------------------------------------------------------------


@pytest.fixture
def essl_transactions() -> dict:
    return json.loads((FIXTURES_DIR / "essl_transactions.json").read_text())


@pytest.fixture
def employee_map() -> dict[str, str]:
    return json.loads((FIXTURES_DIR / "employee_map.json").read_text())


@pytest.fixture
def soap_rows_xml() -> bytes:
    return (FIXTURES_DIR / "soap11_rows.xml").read_bytes()


@pytest.fixture
def soap_diffgram_xml() -> bytes:
    return (FIXTURES_DIR / "soap_diffgram.xml").read_bytes()


@pytest.fixture
def soap_fault_xml() -> bytes:
    return (FIXTURES_DIR / "soap_fault.xml").read_bytes()


@pytest.fixture
def service_wsdl() -> str:
    return (FIXTURES_DIR / "service.wsdl").read_text()
