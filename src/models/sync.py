"""Request/response schemas for the sync endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field

from src.models.base import PunchSyncBase
from src.punchsync.base import CycleOutcome, RawRecord


class RawRecordIn(PunchSyncBase):
    """One device transaction supplied by a caller (same field aliases as the device API)."""

    fields: dict[str, Any] = Field(..., description="Record as the device reports it, e.g. EmployeeCode/LogDate/Direction")

    def to_record(self) -> RawRecord:
        return RawRecord.from_mapping(self.fields)


class PushRequest(PunchSyncBase):
    records: list[RawRecordIn] = Field(..., min_length=1, max_length=1000)


class RawRecordOut(PunchSyncBase):
    employee_code: str | None = None
    device_user_id: str | None = None
    punch_date: str | None = None
    punch_time: str | None = None
    log_date: str | None = None
    direction: str | None = None
    device_id: str | None = None
    device_name: str | None = None

    @classmethod
    def from_record(cls, record: RawRecord) -> "RawRecordOut":
        return cls(
            employee_code=record.employee_code,
            device_user_id=record.device_user_id,
            punch_date=record.punch_date,
            punch_time=record.punch_time,
            log_date=record.log_date,
            direction=record.direction,
            device_id=record.device_id,
            device_name=record.device_name,
        )


class DeviceLogsResponse(PunchSyncBase):
    window_start: datetime
    window_end: datetime
    count: int
    failed: bool
    strategy: str | None = None
    reasons: list[str] = Field(default_factory=list)
    records: list[RawRecordOut] = Field(default_factory=list)


class CycleOutcomeRead(PunchSyncBase):
    status: str
    window_start: datetime | None = None
    window_end: datetime | None = None
    fetched: int = 0
    skipped: int = 0
    duplicates: int = 0
    synced: int = 0
    failed: int = 0
    duration_ms: float = 0.0
    error: str | None = None

    @classmethod
    def from_outcome(cls, outcome: CycleOutcome) -> "CycleOutcomeRead":
        return cls(
            status=outcome.status.value,
            window_start=outcome.window_start,
            window_end=outcome.window_end,
            fetched=outcome.fetched,
            skipped=outcome.skipped,
            duplicates=outcome.duplicates,
            synced=outcome.synced,
            failed=outcome.failed,
            duration_ms=round(outcome.duration_ms, 1),
            error=outcome.error,
        )
