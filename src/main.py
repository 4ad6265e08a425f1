"""PunchSync API — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from src.config import get_settings
from src.punchsync.engine import build_engine
from src.routers import health, oauth, sync
from src.services.postgres import PostgresStateStore, close_pool, init_pool

# ---------- Logging ----------

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("punchsync")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks.

    Missing credentials raise ConfigurationError here, before any cycle runs,
    which aborts startup.
    """
    settings = get_settings()
    logger.info(
        "Starting PunchSync v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    settings.require_credentials()

    store = None
    if settings.database_url:
        pool = await init_pool(settings)
        store = PostgresStateStore(pool)
        await store.ensure_schema()

    engine = await build_engine(settings, store=store)
    app.state.engine = engine
    await engine.probe_connections()
    if settings.run_sync_loop:
        engine.start()

    yield

    await engine.stop()
    await engine.aclose()
    app.state.engine = None
    if settings.database_url:
        await close_pool()
    logger.info("PunchSync shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="PunchSync API",
        description=(
            "Attendance sync engine that moves biometric device punches into the "
            "HR system with adaptive polling, dialect negotiation and OAuth token management."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.engine = None

    # ---------- Health check (outside v1 prefix — always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    app.include_router(sync.router, prefix="/api/v1")
    app.include_router(oauth.router, prefix="/api/v1")

    return app


app = create_app()
