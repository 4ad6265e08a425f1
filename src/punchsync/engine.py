"""Wire the sync components together from settings and the tuning config.

``build_engine()`` is the single place that knows how the pieces fit; the
FastAPI lifespan and tests both go through it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta, timezone
from pathlib import Path

import httpx

from src.config import Settings
from src.punchsync.adapters.sink import SinkClient
from src.punchsync.adapters.source import SourceClient
from src.punchsync.base import CursorStore, Token, TokenStore, utc_now
from src.punchsync.config_loader import SyncConfig, get_sync_config, load_sync_config, reload_sync_config
from src.punchsync.health import HealthMonitor
from src.punchsync.state_store import JsonFileStateStore
from src.punchsync.sync.cursor import SyncCursor
from src.punchsync.sync.dedup import DispatchDedupCache
from src.punchsync.sync.orchestrator import SyncOrchestrator
from src.punchsync.token_manager import TokenManager
from src.punchsync.transform import TransformStage, load_employee_map

logger = logging.getLogger("punchsync.engine")


@dataclass
class SyncEngine:
    """Every long-lived sync component, built once per process."""

    settings: Settings
    config: SyncConfig
    tokens: TokenManager
    source: SourceClient
    sink: SinkClient
    transform: TransformStage
    health: HealthMonitor
    orchestrator: SyncOrchestrator
    store: TokenStore | CursorStore | None = None
    _tasks: list[asyncio.Task] = field(default_factory=list, repr=False)

    def start(self) -> None:
        """Start the sync loop and the periodic health report."""
        self._tasks.append(asyncio.create_task(self.orchestrator.run_forever(), name="punchsync-loop"))
        self._tasks.append(asyncio.create_task(self._report_health(), name="punchsync-health"))

    async def stop(self) -> None:
        """Stop cooperatively: the in-flight cycle finishes, then tasks are awaited."""
        self.orchestrator.stop()
        for task in self._tasks:
            if task.get_name() == "punchsync-health":
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def aclose(self) -> None:
        await self.source.aclose()
        await self.sink.aclose()
        await self.tokens.aclose()

    async def _report_health(self) -> None:
        interval = self.config.health.report_interval_seconds
        while True:
            await asyncio.sleep(interval)
            self.health.log_report()

    async def probe_connections(self) -> dict:
        """Startup diagnostics; results are logged, never fatal."""
        source = await self.source.probe()
        sink = await self.sink.probe()
        log = logger.info if source["success"] else logger.warning
        log("Source probe: %s", source["message"])
        log = logger.info if sink["success"] else logger.warning
        log("Sink probe: %s", sink["message"])
        return {"source": source, "sink": sink}

    def reload_config(self) -> SyncConfig:
        """Re-read the tuning file and hand the new polling policy to the loop.

        Client retry and batching settings are fixed at build time; only the
        polling policy changes without a restart.

        Raises:
            ConfigValidationError: The file is invalid; the running config is kept.
        """
        path = Path(self.settings.sync_config_path) if self.settings.sync_config_path else None
        config = reload_sync_config(path)
        self.orchestrator.update_policy(config.polling)
        self.config = config
        return config

    def status(self) -> dict:
        return {
            "sync": self.orchestrator.status(),
            "source": self.source.stats(),
            "sink": self.sink.stats(),
            "token": self.tokens.info(),
        }


def bootstrap_token(settings: Settings) -> Token | None:
    """Token seeded from settings, for deployments that start from env values."""
    if not settings.oauth_access_token and not settings.oauth_refresh_token:
        return None
    expires_at = settings.oauth_token_expires_at
    if expires_at is not None and expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return Token(
        access_token=settings.oauth_access_token,
        refresh_token=settings.oauth_refresh_token or None,
        expires_at=expires_at,
    )


async def build_engine(
    settings: Settings,
    config: SyncConfig | None = None,
    store: TokenStore | CursorStore | None = None,
    employee_map: dict[str, str] | None = None,
    source_http: httpx.AsyncClient | None = None,
    sink_http: httpx.AsyncClient | None = None,
    oauth_http: httpx.AsyncClient | None = None,
) -> SyncEngine:
    """Build and load every component.

    Args:
        settings:     Environment settings.
        config:       Tuning config (the cached singleton by default).
        store:        Token + cursor store (JSON file from settings by default).
        employee_map: Mapping table (loaded from settings path by default).
        source_http:  Optional httpx client for the source (for testing).
        sink_http:    Optional httpx client for the sink (for testing).
        oauth_http:   Optional httpx client for the OAuth server (for testing).
    """
    if config is None:
        config = load_sync_config(Path(settings.sync_config_path)) if settings.sync_config_path else get_sync_config()
    if store is None:
        store = JsonFileStateStore(settings.state_file_path)
    if employee_map is None:
        employee_map = load_employee_map(settings.employee_map_path)

    tz = config.transform.tzinfo
    tokens = TokenManager(
        accounts_url=settings.oauth_accounts_url,
        client_id=settings.oauth_client_id,
        client_secret=settings.oauth_client_secret,
        redirect_uri=settings.oauth_redirect_uri,
        scope=settings.oauth_scope,
        store=store if isinstance(store, TokenStore) else None,
        expiry_buffer_seconds=config.token_expiry_buffer_s,
        http_client=oauth_http,
        timeout_seconds=settings.sink_timeout_seconds,
    )
    await tokens.load(bootstrap=bootstrap_token(settings))

    source = SourceClient(
        base_url=settings.source_base_url,
        username=settings.source_username,
        password=settings.source_password,
        config=config.source,
        tz=tz,
        json_path=settings.source_json_path,
        timeout_seconds=settings.source_timeout_seconds,
        http_client=source_http,
    )
    sink = SinkClient(
        attendance_url=settings.sink_attendance_url,
        employee_url=settings.sink_employee_url,
        tokens=tokens,
        config=config.sink,
        directory=config.directory,
        tz=tz,
        auth_scheme=settings.sink_auth_scheme,
        timeout_seconds=settings.sink_timeout_seconds,
        http_client=sink_http,
    )
    transform = TransformStage(employee_map, config.transform)
    health = HealthMonitor(config.health)

    cursor = await SyncCursor.load(
        store if isinstance(store, CursorStore) else None,
        now=utc_now().replace(microsecond=0),
        initial_lookback=timedelta(minutes=config.polling.initial_lookback_minutes),
        max_lookback=timedelta(minutes=config.polling.max_lookback_minutes),
    )
    orchestrator = SyncOrchestrator(
        source=source,
        sink=sink,
        transform=transform,
        cursor=cursor,
        health=health,
        polling=config.polling,
        sink_config=config.sink,
        directory_enabled=config.directory.enabled,
        dedup=DispatchDedupCache(config.dedup_max_entries),
    )
    return SyncEngine(
        settings=settings,
        config=config,
        tokens=tokens,
        source=source,
        sink=sink,
        transform=transform,
        health=health,
        orchestrator=orchestrator,
        store=store,
    )
