"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.punchsync.engine import SyncEngine


async def get_engine(request: Request) -> SyncEngine:
    """Return the sync engine built in the app lifespan.

    Raises 503 while the engine is not available (startup failed or not finished).
    """
    engine: SyncEngine | None = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Sync engine not started")
    return engine


# Annotated shortcuts for route signatures
Engine = Annotated[SyncEngine, Depends(get_engine)]
AppSettings = Annotated[Settings, Depends(get_settings)]
