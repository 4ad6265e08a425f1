"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request

from src.dependencies import AppSettings
from src.punchsync.base import utc_now

router = APIRouter(tags=["system"])
logger = logging.getLogger("punchsync.api.health")


@router.get("/health")
async def health_check(request: Request, settings: AppSettings) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    The body carries the Health Monitor snapshot; ``status`` is ``degraded``
    when memory or cycle failure rate crosses its threshold, or when the
    sync engine did not start.
    """
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        logger.warning("Health check: sync engine not started")
        return {
            "status": "degraded",
            "version": settings.app_version,
            "environment": settings.environment,
            "engine": "not started",
            "timestamp": utc_now().isoformat(),
        }

    return {
        **engine.health.status().to_dict(),
        "version": settings.app_version,
        "environment": settings.environment,
        "engine": engine.orchestrator.state.value,
    }
