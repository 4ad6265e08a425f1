"""Sync watermark: the end of the last completed fetch window."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from src.punchsync.base import CursorStore

logger = logging.getLogger("punchsync.sync.cursor")


class SyncCursor:
    """Monotonic watermark with optional durable storage.

    ``advance()`` ignores any value that is not later than the current one,
    so the cursor never moves backwards whatever the caller passes.
    """

    def __init__(self, value: datetime, store: CursorStore | None = None) -> None:
        self._value = value
        self._store = store

    @classmethod
    async def load(
        cls,
        store: CursorStore | None,
        now: datetime,
        initial_lookback: timedelta,
        max_lookback: timedelta,
    ) -> "SyncCursor":
        """Restore the persisted watermark.

        First run starts ``initial_lookback`` before ``now``.  A persisted
        value older than ``now - max_lookback`` is raised to that floor; a
        value in the future is kept, since lowering it would break monotonicity.
        """
        persisted = await store.load_cursor() if store else None
        floor = now - max_lookback
        if persisted is None:
            value = now - initial_lookback
            logger.info("No persisted cursor; starting at %s", value.isoformat())
        elif persisted < floor:
            value = floor
            logger.warning(
                "Persisted cursor %s is older than the lookback limit; starting at %s",
                persisted.isoformat(), floor.isoformat(),
            )
        else:
            value = persisted
            logger.info("Resuming from cursor %s", value.isoformat())
        return cls(value, store)

    @property
    def value(self) -> datetime:
        return self._value

    async def advance(self, value: datetime) -> bool:
        """Move the watermark forward to ``value``; returns False if it did not move."""
        if value <= self._value:
            return False
        self._value = value
        if self._store is not None:
            try:
                await self._store.save_cursor(value)
            except Exception as exc:
                logger.error("Failed to persist cursor %s: %s", value.isoformat(), exc)
        return True
