"""Canonical data models and storage interfaces for the PunchSync engine.

Both remote APIs return loosely-shaped JSON/XML.  Each client boundary decodes
into the fixed types defined here, and everything past that boundary (transform,
orchestrator, health monitor) works only with these types.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping

from src.punchsync.errors import SyncError

logger = logging.getLogger("punchsync")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# OAuth token
# ---------------------------------------------------------------------------


@dataclass
class Token:
    """OAuth token state for the sink API.

    Owned by TokenManager.  Other components only ever see the access token
    string handed out by ``TokenManager.get_valid_token()``.

    Attributes:
        access_token:  Token sent in the Authorization header.
        refresh_token: Long-lived token used to obtain a new access_token.
        expires_at:    Absolute UTC instant when access_token expires (None = unknown).
        token_type:    Token type reported by the provider.
        scope:         Granted OAuth scopes.
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scope: list[str] = field(default_factory=list)

    def is_usable(self, now: datetime, buffer_seconds: float) -> bool:
        """Return True while ``now < expires_at - buffer``.

        A token with no known expiry is treated as usable until the sink
        rejects it with a 401.
        """
        if not self.access_token:
            return False
        if self.expires_at is None:
            return True
        return now < self.expires_at - timedelta(seconds=buffer_seconds)

    @classmethod
    def from_token_response(
        cls,
        data: Mapping[str, Any],
        now: datetime,
        previous_refresh_token: str | None = None,
    ) -> "Token":
        """Build a Token from an OAuth ``/token`` JSON response.

        Keeps the previous refresh token unless the provider rotated it.

        Raises:
            ValueError: If the response carries no access_token.
        """
        access = data.get("access_token")
        if not access or not isinstance(access, str):
            raise ValueError("token response carries no access_token")
        try:
            expires_in = float(data.get("expires_in", 3600))
        except (TypeError, ValueError):
            expires_in = 3600.0
        scope_raw = data.get("scope") or ""
        scope = [s for s in str(scope_raw).replace(",", " ").split() if s]
        return cls(
            access_token=access,
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            expires_at=now + timedelta(seconds=expires_in),
            token_type=data.get("token_type") or "Bearer",
            scope=scope,
        )

    def to_json(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "token_type": self.token_type,
            "scope": self.scope,
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "Token | None":
        access = data.get("access_token")
        if not access:
            return None
        expires_at = None
        if raw := data.get("expires_at"):
            try:
                expires_at = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
                if expires_at.tzinfo is None:
                    expires_at = expires_at.replace(tzinfo=timezone.utc)
            except ValueError:
                logger.warning("Ignoring unparseable token expiry %r", raw)
        return cls(
            access_token=access,
            refresh_token=data.get("refresh_token") or None,
            expires_at=expires_at,
            token_type=data.get("token_type") or "Bearer",
            scope=list(data.get("scope") or []),
        )


# ---------------------------------------------------------------------------
# Source-side record
# ---------------------------------------------------------------------------

# Field aliases seen across device-controller deployments, matched case-insensitively.
_RAW_ALIASES: dict[str, tuple[str, ...]] = {
    "employee_code": ("EmployeeCode", "EmpCode", "Employee_Code", "EmployeeID"),
    "device_user_id": ("UserId", "UserID", "EmployeeCodeInDevice", "EnrollNumber"),
    "punch_date": ("PunchDate",),
    "punch_time": ("PunchTime",),
    "log_date": ("LogDate", "DateTime", "PunchDateTime", "LogDateTime"),
    "direction": ("Direction", "InOut", "PunchDirection"),
    "device_id": ("DeviceID", "DeviceId", "MachineNo", "SerialNumber"),
    "device_name": ("DeviceName", "MachineName", "DeviceSName"),
}


def _pick(lowered: Mapping[str, Any], aliases: tuple[str, ...]) -> str | None:
    for alias in aliases:
        value = lowered.get(alias.lower())
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


@dataclass(frozen=True)
class RawRecord:
    """One transaction as reported by the device controller.

    Immutable; consumed once by the transform stage.  Date/time text is kept
    exactly as received because deployments disagree on formats.

    Attributes:
        employee_code:  Employee code as configured in the device software.
        device_user_id: Enrollment number inside the device, if reported.
        punch_date:     Date part when the source splits date and time.
        punch_time:     Time part when the source splits date and time.
        log_date:       Combined date-time text when the source reports one field.
        direction:      Raw direction flag ('in', 'out', ...).
        device_id:      Device identifier / serial.
        device_name:    Human-readable device name.
        raw:            The decoded source mapping, for diagnostics.
    """

    employee_code: str | None = None
    device_user_id: str | None = None
    punch_date: str | None = None
    punch_time: str | None = None
    log_date: str | None = None
    direction: str | None = None
    device_id: str | None = None
    device_name: str | None = None
    raw: dict = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RawRecord":
        """Decode a source mapping, accepting the known field-name variants."""
        lowered = {str(k).lower(): v for k, v in data.items()}
        values = {name: _pick(lowered, aliases) for name, aliases in _RAW_ALIASES.items()}
        return cls(raw=dict(data), **values)

    @property
    def timestamp_text(self) -> str | None:
        """Date and time joined into one string, or None if the record has neither form."""
        if self.punch_date and self.punch_time:
            return f"{self.punch_date} {self.punch_time}"
        if self.log_date:
            return self.log_date
        if self.punch_date and " " in self.punch_date.strip():
            return self.punch_date
        return None


# ---------------------------------------------------------------------------
# Sink-side event
# ---------------------------------------------------------------------------


class Direction(str, Enum):
    IN = "in"
    OUT = "out"


@dataclass(frozen=True)
class AttendanceEvent:
    """Normalized attendance punch ready for the HR sink.

    Attributes:
        employee_id:   Resolved sink-side employee ID.
        timestamp:     Punch instant, tz-aware, in the configured time zone.
        direction:     IN or OUT.
        check_out:     Optional explicit check-out instant.
        device_id:     Source device identifier.
        device_name:   Source device name.
        comment:       Free-text comment sent with the punch.
        source_code:   Employee code as it appeared at the source.
    """

    employee_id: str
    timestamp: datetime
    direction: Direction = Direction.IN
    check_out: datetime | None = None
    device_id: str | None = None
    device_name: str | None = None
    comment: str = ""
    source_code: str | None = None


# ---------------------------------------------------------------------------
# Dispatch results
# ---------------------------------------------------------------------------


class ResultKind(str, Enum):
    SUCCESS = "success"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"
    PERMANENT = "permanent"
    SERVER = "server"
    NETWORK = "network"


@dataclass
class EventResult:
    """Outcome of posting one AttendanceEvent.

    Attributes:
        event:     The event that was posted.
        kind:      SUCCESS or the classified failure.
        error:     The SyncError behind a failure (None on success).
        attempts:  HTTP attempts made, including the post-refresh retry.
        refreshed: True if a 401 forced a token refresh for this event.
    """

    event: AttendanceEvent
    kind: ResultKind
    error: SyncError | None = None
    attempts: int = 1
    refreshed: bool = False

    @property
    def ok(self) -> bool:
        return self.kind is ResultKind.SUCCESS


@dataclass
class BatchOutcome:
    """Synced vs. failed counts for one dispatch batch."""

    synced: int = 0
    failed: int = 0
    rate_limited: int = 0
    retry_after: float | None = None

    @property
    def attempted(self) -> int:
        return self.synced + self.failed

    def merge(self, other: "BatchOutcome") -> None:
        self.synced += other.synced
        self.failed += other.failed
        self.rate_limited += other.rate_limited
        if other.retry_after is not None:
            self.retry_after = max(self.retry_after or 0.0, other.retry_after)

    @classmethod
    def from_results(cls, results: list[EventResult]) -> "BatchOutcome":
        outcome = cls()
        for r in results:
            if r.ok:
                outcome.synced += 1
                continue
            outcome.failed += 1
            if r.kind is ResultKind.RATE_LIMIT:
                outcome.rate_limited += 1
                hint = getattr(r.error, "retry_after", None)
                if hint is not None:
                    outcome.retry_after = max(outcome.retry_after or 0.0, hint)
        return outcome


class CycleStatus(str, Enum):
    EMPTY = "empty"
    ACTIVE = "active"
    FETCH_FAILED = "fetch_failed"
    ERROR = "error"


@dataclass
class CycleOutcome:
    """Everything one sync cycle did, as recorded by the Health Monitor.

    Attributes:
        status:       EMPTY, ACTIVE, FETCH_FAILED or ERROR.
        window_start: Start of the fetch window (the cursor before the cycle).
        window_end:   End of the fetch window.
        fetched:      Raw records returned by the source.
        skipped:      Records dropped by the transform stage.
        duplicates:   Events suppressed by the dispatch dedup cache.
        synced:       Events the sink accepted.
        failed:       Events the sink rejected or that could not be delivered.
        duration_ms:  Wall-clock duration of the cycle.
        error:        Cycle-level error message for ERROR cycles.
    """

    status: CycleStatus
    window_start: datetime | None = None
    window_end: datetime | None = None
    fetched: int = 0
    skipped: int = 0
    duplicates: int = 0
    synced: int = 0
    failed: int = 0
    duration_ms: float = 0.0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in (CycleStatus.EMPTY, CycleStatus.ACTIVE)

    def add_batch(self, batch: BatchOutcome) -> None:
        self.synced += batch.synced
        self.failed += batch.failed


# ---------------------------------------------------------------------------
# Storage interfaces
# ---------------------------------------------------------------------------


class TokenStore(ABC):
    """Durable home for the sink OAuth token (file, database, secret store)."""

    @abstractmethod
    async def load_token(self) -> Token | None:
        """Return the persisted token, or None if nothing is stored."""

    @abstractmethod
    async def save_token(self, token: Token | None) -> None:
        """Persist ``token``; None clears the stored state."""


class CursorStore(ABC):
    """Durable home for the sync watermark."""

    @abstractmethod
    async def load_cursor(self) -> datetime | None:
        """Return the persisted watermark, or None on first run."""

    @abstractmethod
    async def save_cursor(self, value: datetime) -> None:
        """Persist the watermark."""
