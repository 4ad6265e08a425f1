"""Sink OAuth grant: consent URL, authorization-code callback, revoke."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query

from src.dependencies import Engine
from src.models.base import ErrorDetail
from src.punchsync.errors import AuthError, SyncError

router = APIRouter(
    prefix="/oauth",
    tags=["oauth"],
    responses={503: {"model": ErrorDetail, "description": "Sync engine not started"}},
)
logger = logging.getLogger("punchsync.api.oauth")


@router.get("/authorize")
async def authorize(engine: Engine, state: str | None = Query(None)) -> dict:
    """Consent URL to open in a browser; the provider redirects to /callback."""
    return {"authorization_url": engine.tokens.authorization_url(state)}


@router.get("/callback", responses={400: {"model": ErrorDetail}, 502: {"model": ErrorDetail}})
async def callback(
    engine: Engine,
    code: str | None = Query(None),
    error: str | None = Query(None),
) -> dict:
    """Exchange the authorization code; replaces a revoked or missing grant."""
    if error:
        raise HTTPException(status_code=400, detail=f"authorization denied: {error}")
    if not code:
        raise HTTPException(status_code=400, detail="missing authorization code")
    try:
        await engine.tokens.exchange_code(code)
    except AuthError as exc:
        logger.warning("Authorization code rejected: %s", exc.message)
        raise HTTPException(status_code=400, detail=exc.message) from exc
    except SyncError as exc:
        raise HTTPException(status_code=502, detail=f"{exc.kind}: {exc.message}") from exc
    return engine.tokens.info()


@router.post("/revoke")
async def revoke(engine: Engine) -> dict:
    """Revoke the grant upstream and locally; syncing pauses until /callback runs again."""
    await engine.tokens.revoke()
    return engine.tokens.info()
