"""Deduplication of attendance punches across overlapping fetch windows.

The device query is inclusive at both ends, so a punch stamped exactly on the
watermark can come back in two consecutive windows.  Punches the sink already
accepted are remembered here and not posted again.

Dedup key:
    (employee_id, timestamp, direction)

The sink's own behaviour on repeated punches remains the authority; this cache
only stops redundant API calls within one process lifetime.
"""

from __future__ import annotations

import logging
from collections import OrderedDict

from src.punchsync.base import AttendanceEvent

logger = logging.getLogger("punchsync.sync.dedup")


def event_key(event: AttendanceEvent) -> str:
    """Generate the dedup key for an attendance event.

    Args:
        event: A normalized event (timestamp already truncated to seconds).

    Returns:
        Pipe-separated dedup key string.
    """
    return f"{event.employee_id}|{event.timestamp.isoformat()}|{event.direction.value}"


class DispatchDedupCache:
    """Bounded in-process cache of punches the sink has accepted.

    Oldest keys are evicted first once ``max_entries`` is reached.

    Usage::

        cache = DispatchDedupCache(max_entries=10000)
        fresh = [e for e in events if not cache.is_seen(event_key(e))]
        ...
        cache.mark_seen(event_key(event))
    """

    def __init__(self, max_entries: int = 10000) -> None:
        self._max = max(1, max_entries)
        self._seen: OrderedDict[str, None] = OrderedDict()

    def is_seen(self, key: str) -> bool:
        return key in self._seen

    def mark_seen(self, key: str) -> None:
        if key in self._seen:
            self._seen.move_to_end(key)
            return
        self._seen[key] = None
        while len(self._seen) > self._max:
            self._seen.popitem(last=False)

    def split(self, events: list[AttendanceEvent]) -> tuple[list[AttendanceEvent], int]:
        """Return (events not yet seen, number suppressed).

        Duplicates inside ``events`` itself are also collapsed.
        """
        fresh: list[AttendanceEvent] = []
        batch_keys: set[str] = set()
        suppressed = 0
        for event in events:
            key = event_key(event)
            if key in self._seen or key in batch_keys:
                suppressed += 1
                continue
            batch_keys.add(key)
            fresh.append(event)
        if suppressed:
            logger.debug("Suppressed %d already-synced punch(es)", suppressed)
        return fresh, suppressed

    def clear(self) -> None:
        """Reset the cache."""
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)
