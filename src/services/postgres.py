"""PostgreSQL-backed state store.

Uses ``asyncpg`` with a module-level pool, initialized once at app startup
when ``DATABASE_URL`` is set.  Token and cursor live as JSONB rows in one
key/value table:

    CREATE TABLE IF NOT EXISTS sync_state (
        key        text PRIMARY KEY,
        value      jsonb NOT NULL,
        updated_at timestamptz NOT NULL DEFAULT NOW()
    );

Writes are upserts, so repeated saves of the same key are idempotent.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime

import asyncpg

from src.config import Settings, get_settings
from src.punchsync.base import CursorStore, Token, TokenStore
from src.punchsync.state_store import parse_cursor

logger = logging.getLogger("punchsync.db")

# Module-level connection pool — initialized once at app startup
_pool: asyncpg.Pool | None = None

STATE_TABLE = "sync_state"

_CREATE_TABLE = f"""
CREATE TABLE IF NOT EXISTS {STATE_TABLE} (
    key        text PRIMARY KEY,
    value      jsonb NOT NULL,
    updated_at timestamptz NOT NULL DEFAULT NOW()
)
"""


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=1,
        max_size=5,
        command_timeout=30,
    )
    logger.info("Database pool initialized (min=1, max=5)")
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized — call init_pool() first")
    return _pool


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    On conflict, updates the non-key columns and stamps ``updated_at``.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
        do_clause = f"DO UPDATE SET {update_set}, updated_at = NOW()"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )


_UPSERT = build_upsert_query(STATE_TABLE, ["key", "value"], ["key"])
_SELECT = f"SELECT value FROM {STATE_TABLE} WHERE key = $1"
_DELETE = f"DELETE FROM {STATE_TABLE} WHERE key = $1"


class PostgresStateStore(TokenStore, CursorStore):
    """TokenStore + CursorStore backed by the ``sync_state`` table."""

    TOKEN_KEY = "sink_token"
    CURSOR_KEY = "cursor"

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(_CREATE_TABLE)

    async def _get(self, key: str) -> object | None:
        async with self._pool.acquire() as conn:
            raw = await conn.fetchval(_SELECT, key)
        if raw is None:
            return None
        # asyncpg returns jsonb as text unless a codec is registered
        return json.loads(raw) if isinstance(raw, str) else raw

    async def _put(self, key: str, value: object | None) -> None:
        async with self._pool.acquire() as conn:
            if value is None:
                await conn.execute(_DELETE, key)
            else:
                await conn.execute(_UPSERT, key, json.dumps(value))

    async def load_token(self) -> Token | None:
        raw = await self._get(self.TOKEN_KEY)
        return Token.from_json(raw) if isinstance(raw, dict) else None

    async def save_token(self, token: Token | None) -> None:
        await self._put(self.TOKEN_KEY, token.to_json() if token else None)

    async def load_cursor(self) -> datetime | None:
        return parse_cursor(await self._get(self.CURSOR_KEY))

    async def save_cursor(self, value: datetime) -> None:
        await self._put(self.CURSOR_KEY, value.isoformat())
