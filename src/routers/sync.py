"""Sync control endpoints: status, run-now, device-log preview, manual push."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from src.dependencies import Engine
from src.models.base import ErrorDetail, StatusResponse
from src.models.sync import CycleOutcomeRead, DeviceLogsResponse, PushRequest, RawRecordOut
from src.punchsync.base import utc_now
from src.punchsync.config_loader import ConfigValidationError
from src.punchsync.errors import AuthUnavailable, SyncError

router = APIRouter(
    prefix="/sync",
    tags=["sync"],
    responses={503: {"model": ErrorDetail, "description": "Sync engine not started"}},
)
logger = logging.getLogger("punchsync.api.sync")

_MAX_PREVIEW_WINDOW = timedelta(days=7)


def _as_http_error(exc: SyncError) -> HTTPException:
    if isinstance(exc, AuthUnavailable):
        return HTTPException(status_code=503, detail=exc.message)
    return HTTPException(status_code=502, detail=f"{exc.kind}: {exc.message}")


@router.get("/status", response_model=StatusResponse)
async def sync_status(engine: Engine) -> Any:
    return engine.status()


@router.post("/run", response_model=CycleOutcomeRead)
async def run_now(engine: Engine) -> Any:
    """Run one cycle now; waits for any in-flight cycle first."""
    outcome = await engine.orchestrator.run_cycle()
    return CycleOutcomeRead.from_outcome(outcome)


@router.get("/device-logs", response_model=DeviceLogsResponse)
async def device_logs(
    engine: Engine,
    from_: datetime | None = Query(default=None, alias="from"),
    to: datetime | None = Query(default=None),
) -> Any:
    """Preview raw source records for a window without syncing them."""
    tz = engine.transform.tz
    end = to or utc_now()
    start = from_ or end - timedelta(hours=1)
    if start.tzinfo is None:
        start = start.replace(tzinfo=tz)
    if end.tzinfo is None:
        end = end.replace(tzinfo=tz)
    if start > end:
        raise HTTPException(status_code=400, detail="'from' must not be after 'to'")
    if end - start > _MAX_PREVIEW_WINDOW:
        raise HTTPException(status_code=400, detail="preview window is limited to 7 days")

    result = await engine.source.fetch_window(start, end)
    return DeviceLogsResponse(
        window_start=start,
        window_end=end,
        count=len(result.records),
        failed=result.failed,
        strategy=result.strategy,
        reasons=result.reasons,
        records=[RawRecordOut.from_record(r) for r in result.records],
    )


@router.post("/push", response_model=CycleOutcomeRead, responses={502: {"model": ErrorDetail}})
async def push_records(engine: Engine, body: PushRequest) -> Any:
    """Transform and dispatch caller-supplied records; the cursor does not move."""
    try:
        await engine.tokens.get_valid_token()
        outcome = await engine.orchestrator.push([r.to_record() for r in body.records])
    except SyncError as exc:
        logger.warning("Manual push failed: %s", exc.message)
        raise _as_http_error(exc) from exc
    return CycleOutcomeRead.from_outcome(outcome)


@router.post("/reload-config", responses={422: {"model": ErrorDetail}})
async def reload_config(engine: Engine) -> dict:
    """Re-read sync_config.yaml; the polling policy applies from the next cycle."""
    try:
        config = engine.reload_config()
    except (ConfigValidationError, FileNotFoundError) as exc:
        logger.warning("Config reload rejected: %s", exc)
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {"version": config.version, "interval_ms": engine.orchestrator.interval.current_ms}
