"""JSON-file persistence for the sink token and the sync watermark.

One small document holds both, e.g.::

    {
      "token": {"access_token": "...", "refresh_token": "...", "expires_at": "..."},
      "cursor": "2026-02-23T09:15:00+00:00"
    }

Writes go to a temp file in the same directory followed by ``os.replace`` so
a crash never leaves a half-written document.  For multi-instance
deployments use ``src.services.postgres.PostgresStateStore`` instead.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from src.punchsync.base import CursorStore, Token, TokenStore

logger = logging.getLogger("punchsync.state")


def parse_cursor(raw: object) -> datetime | None:
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring unparseable persisted cursor %r", raw)
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class JsonFileStateStore(TokenStore, CursorStore):
    """TokenStore + CursorStore backed by one JSON file."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.error("State file %s is corrupt (%s); starting from empty state", self._path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, sort_keys=True)
            os.replace(tmp, self._path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    async def _update(self, key: str, value: object) -> None:
        async with self._lock:
            data = self._read()
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
            self._write(data)

    # ── TokenStore ──

    async def load_token(self) -> Token | None:
        async with self._lock:
            raw = self._read().get("token")
        return Token.from_json(raw) if isinstance(raw, dict) else None

    async def save_token(self, token: Token | None) -> None:
        await self._update("token", token.to_json() if token else None)

    # ── CursorStore ──

    async def load_cursor(self) -> datetime | None:
        async with self._lock:
            raw = self._read().get("cursor")
        return parse_cursor(raw)

    async def save_cursor(self, value: datetime) -> None:
        await self._update("cursor", value.isoformat())
