"""Transform stage: RawRecord → AttendanceEvent.

Each raw record either becomes exactly one AttendanceEvent or is dropped
with a logged SkippedRecord reason.  The stage is pure: employee IDs come from
the static mapping table plus any directory matches the orchestrator resolved
beforehand, and no I/O happens here.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Iterable, Mapping

from src.punchsync.base import AttendanceEvent, Direction, RawRecord
from src.punchsync.config_loader import TransformConfig
from src.punchsync.errors import ConfigurationError, ValidationError

logger = logging.getLogger("punchsync.transform")

# Java-style date pattern tokens used by the sink API, longest first.
_PATTERN_TOKENS = (
    ("yyyy", "%Y"),
    ("MMM", "%b"),
    ("MM", "%m"),
    ("dd", "%d"),
    ("HH", "%H"),
    ("mm", "%M"),
    ("ss", "%S"),
)

_OUT_FLAGS = {"out", "o", "exit", "checkout", "check-out", "check out"}


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def to_strftime(pattern: str) -> str:
    """Convert a ``dd/MM/yyyy HH:mm:ss``-style pattern to strftime directives."""
    out = []
    i = 0
    while i < len(pattern):
        for token, directive in _PATTERN_TOKENS:
            if pattern.startswith(token, i):
                out.append(directive)
                i += len(token)
                break
        else:
            out.append(pattern[i])
            i += 1
    return "".join(out)


def format_sink_time(value: datetime, pattern: str, tz: tzinfo) -> str:
    """Render ``value`` in the sink's zone and date pattern."""
    if value.tzinfo is not None:
        value = value.astimezone(tz)
    return value.strftime(to_strftime(pattern))


def parse_sink_time(text: str, pattern: str, tz: tzinfo) -> datetime:
    return datetime.strptime(text, to_strftime(pattern)).replace(tzinfo=tz)


def parse_timestamp(text: str, formats: Iterable[str], tz: tzinfo) -> datetime:
    """Parse device date-time text, trying each format in order.

    Naive results are interpreted in ``tz``; aware results are converted to it.
    Sub-second precision is dropped because the sink format carries seconds.

    Raises:
        ValidationError: If no format matches.
    """
    cleaned = text.strip()
    parsed: datetime | None = None
    for fmt in formats:
        try:
            parsed = datetime.strptime(cleaned, fmt)
            break
        except ValueError:
            continue
    if parsed is None:
        try:
            parsed = datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"unparseable timestamp {text!r}") from None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    else:
        parsed = parsed.astimezone(tz)
    return parsed.replace(microsecond=0)


def normalize_direction(raw: str | None) -> Direction:
    if raw and raw.strip().lower() in _OUT_FLAGS:
        return Direction.OUT
    return Direction.IN


# ---------------------------------------------------------------------------
# Mapping table
# ---------------------------------------------------------------------------


def load_employee_map(path: Path | str | None) -> dict[str, str]:
    """Load the device-code → sink-employee-ID table from a JSON object file.

    A missing file yields an empty table (every code then goes to the
    directory lookup).

    Raises:
        ConfigurationError: The file exists but is not a JSON object.
    """
    if not path:
        return {}
    target = Path(path)
    if not target.exists():
        logger.warning("Employee map %s not found; relying on directory lookup", target)
        return {}
    try:
        data = json.loads(target.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"employee map {target} is unreadable: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"employee map {target} must be a JSON object of code → id")
    table = {str(k).strip(): str(v).strip() for k, v in data.items() if v not in (None, "")}
    logger.info("Loaded %d employee mapping(s) from %s", len(table), target)
    return table


# ---------------------------------------------------------------------------
# Stage
# ---------------------------------------------------------------------------


@dataclass
class SkippedRecord:
    record: RawRecord
    reason: str


@dataclass
class TransformResult:
    events: list[AttendanceEvent] = field(default_factory=list)
    skipped: list[SkippedRecord] = field(default_factory=list)


class TransformStage:
    """Normalize raw device records into sink-ready attendance events.

    Args:
        employee_map: Static device-code → sink-employee-ID table.
        config:       Time zone, timestamp formats and comment template.
    """

    def __init__(self, employee_map: Mapping[str, str], config: TransformConfig) -> None:
        self._map = dict(employee_map)
        self._config = config
        self._tz = config.tzinfo

    @property
    def tz(self) -> tzinfo:
        return self._tz

    def source_code(self, record: RawRecord) -> str | None:
        return record.employee_code or record.device_user_id

    def resolve_employee(
        self, record: RawRecord, resolved: Mapping[str, str | None] | None = None
    ) -> str | None:
        """Sink employee ID from the table, else from directory results."""
        for key in (record.employee_code, record.device_user_id):
            if key and key in self._map:
                return self._map[key]
        if resolved:
            for key in (record.employee_code, record.device_user_id):
                if key and resolved.get(key):
                    return resolved[key]
        return None

    def unmapped_codes(self, records: Iterable[RawRecord]) -> list[str]:
        """Source codes with no table entry, in first-seen order."""
        codes: list[str] = []
        for record in records:
            if any(k and k in self._map for k in (record.employee_code, record.device_user_id)):
                continue
            code = self.source_code(record)
            if code and code not in codes:
                codes.append(code)
        return codes

    def transform_record(
        self, record: RawRecord, resolved: Mapping[str, str | None] | None = None
    ) -> AttendanceEvent:
        """Build one event.

        Raises:
            ValidationError: Unmapped employee or unparseable timestamp.
        """
        code = self.source_code(record)
        if not code:
            raise ValidationError("record has no employee code")
        employee_id = self.resolve_employee(record, resolved)
        if not employee_id:
            raise ValidationError(f"no sink employee for code {code!r}")

        text = record.timestamp_text
        if not text:
            raise ValidationError(f"record for {code!r} has no punch time")
        timestamp = parse_timestamp(text, self._config.timestamp_formats, self._tz)

        device_name = record.device_name or self._config.default_device_name
        direction = normalize_direction(record.direction)
        return AttendanceEvent(
            employee_id=employee_id,
            timestamp=timestamp,
            direction=direction,
            device_id=record.device_id,
            device_name=device_name,
            comment=self._config.comment_template.format(
                device_name=device_name,
                device_id=record.device_id or "",
                direction=direction.value,
            ),
            source_code=code,
        )

    def transform(
        self, records: Iterable[RawRecord], resolved: Mapping[str, str | None] | None = None
    ) -> TransformResult:
        result = TransformResult()
        for record in records:
            try:
                result.events.append(self.transform_record(record, resolved))
            except ValidationError as exc:
                logger.warning("Skipping record: %s", exc.reason)
                result.skipped.append(SkippedRecord(record=record, reason=exc.reason))
        return result
