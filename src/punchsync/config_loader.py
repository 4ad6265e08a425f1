"""Load, validate, and hot-reload the PunchSync tuning configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk; the running orchestrator picks new polling values up on its next cycle.

Usage::

    from src.punchsync.config_loader import get_sync_config

    config = get_sync_config()
    config.polling.base_interval_ms      # 20000
    config.polling.is_peak_hour(9)       # True
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

logger = logging.getLogger("punchsync.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"

_SOAP_VERSIONS = ("1.1", "1.2")


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PeakWindow:
    """An hour window [start, end) during which polling is sped up."""

    start: int
    end: int

    def contains(self, hour: int) -> bool:
        return self.start <= hour < self.end


@dataclass
class PollingConfig:
    """Adaptive polling interval bounds and thresholds."""

    base_interval_ms: float
    min_interval_ms: float
    max_interval_ms: float
    backoff_factor: float
    empty_polls_to_backoff: int
    peak_hours: list[PeakWindow]
    initial_lookback_minutes: int = 60
    max_lookback_minutes: int = 1440

    def is_peak_hour(self, hour: int) -> bool:
        return any(w.contains(hour) for w in self.peak_hours)


@dataclass(frozen=True)
class SoapStrategyConfig:
    """One SOAP {action, envelope-version} combination."""

    action: str
    version: str


@dataclass
class SourceConfig:
    """Device-side API negotiation and retry settings."""

    max_attempts: int
    backoff_base_ms: int
    backoff_cap_ms: int
    namespace: str
    wsdl_discovery: bool
    request_date_format: str
    strategies: list[SoapStrategyConfig]


@dataclass
class SinkConfig:
    """HR-side dispatch, batching and retry settings."""

    max_attempts: int
    backoff_base_ms: int
    backoff_cap_ms: int
    rate_limit_delay_ms: int
    batch_size: int
    max_rate_limit_pause_seconds: float
    date_format: str


@dataclass
class DirectoryConfig:
    """Employee-directory search settings for codes missing from the mapping table."""

    enabled: bool
    search_fields: list[str]
    search_column_param: str
    search_value_param: str
    id_fields: list[str]


@dataclass
class TransformConfig:
    """Record normalization settings."""

    timezone: str
    timestamp_formats: list[str]
    comment_template: str
    default_device_name: str

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass
class HealthConfig:
    """Thresholds for the healthy/degraded classification."""

    memory_threshold: float
    max_failure_rate: float
    report_interval_seconds: float


@dataclass
class SyncConfig:
    """Complete, validated sync configuration.

    This is the single in-memory representation of sync_config.yaml.

    Attributes:
        version:               Config schema version string.
        polling:               Adaptive interval settings.
        source:                Source negotiation and retry settings.
        sink:                  Sink dispatch and retry settings.
        directory:             Employee directory lookup settings.
        token_expiry_buffer_s: Seconds before expiry a token stops being handed out.
        transform:             Record normalization settings.
        health:                Health classification thresholds.
        dedup_max_entries:     Size bound of the dispatch dedup cache.
    """

    version: str
    polling: PollingConfig
    source: SourceConfig
    sink: SinkConfig
    directory: DirectoryConfig
    token_expiry_buffer_s: float
    transform: TransformConfig
    health: HealthConfig
    dedup_max_entries: int
    _raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Applies defaults for optional fields and collects every problem before
    raising, so one edit fixes all of them.

    Raises:
        ConfigValidationError: If any value is missing or out of range.
    """
    errors: list[str] = []

    def _num(section: dict, key: str, default: Any, name: str, cast: type = float) -> Any:
        value = section.get(key, default)
        try:
            return cast(value)
        except (TypeError, ValueError):
            errors.append(f"{name}.{key} must be a number, got {value!r}")
            return cast(default)

    version = str(raw.get("version", "1.0"))

    # ── Polling ──
    p_raw = raw.get("polling") or {}
    peak_hours: list[PeakWindow] = []
    for i, window in enumerate(p_raw.get("peak_hours", []) or []):
        if not isinstance(window, dict):
            errors.append(f"polling.peak_hours[{i}] must be a mapping with start/end")
            continue
        try:
            start, end = int(window["start"]), int(window["end"])
        except (KeyError, TypeError, ValueError):
            errors.append(f"polling.peak_hours[{i}] needs integer start and end")
            continue
        if not (0 <= start < end <= 24):
            errors.append(f"polling.peak_hours[{i}] = {start}-{end} is not a valid hour window")
            continue
        peak_hours.append(PeakWindow(start=start, end=end))

    polling = PollingConfig(
        base_interval_ms=_num(p_raw, "base_interval_ms", 20000, "polling"),
        min_interval_ms=_num(p_raw, "min_interval_ms", 10000, "polling"),
        max_interval_ms=_num(p_raw, "max_interval_ms", 120000, "polling"),
        backoff_factor=_num(p_raw, "backoff_factor", 1.5, "polling"),
        empty_polls_to_backoff=_num(p_raw, "empty_polls_to_backoff", 5, "polling", int),
        peak_hours=peak_hours,
        initial_lookback_minutes=_num(p_raw, "initial_lookback_minutes", 60, "polling", int),
        max_lookback_minutes=_num(p_raw, "max_lookback_minutes", 1440, "polling", int),
    )
    if not (0 < polling.min_interval_ms <= polling.base_interval_ms <= polling.max_interval_ms):
        errors.append(
            "polling intervals must satisfy 0 < min_interval_ms <= base_interval_ms <= max_interval_ms "
            f"(got {polling.min_interval_ms}, {polling.base_interval_ms}, {polling.max_interval_ms})"
        )
    if polling.backoff_factor <= 1.0:
        errors.append(f"polling.backoff_factor = {polling.backoff_factor} must be greater than 1")
    if polling.empty_polls_to_backoff < 1:
        errors.append("polling.empty_polls_to_backoff must be at least 1")
    if polling.max_lookback_minutes < polling.initial_lookback_minutes:
        errors.append("polling.max_lookback_minutes must be >= initial_lookback_minutes")

    # ── Source ──
    s_raw = raw.get("source") or {}
    strategies: list[SoapStrategyConfig] = []
    for i, item in enumerate(s_raw.get("strategies", []) or []):
        if not isinstance(item, dict) or not item.get("action"):
            errors.append(f"source.strategies[{i}] must be a mapping with an action")
            continue
        soap_version = str(item.get("version", "1.1"))
        if soap_version not in _SOAP_VERSIONS:
            errors.append(
                f"source.strategies[{i}].version = {soap_version!r} must be one of {_SOAP_VERSIONS}"
            )
            continue
        strategies.append(SoapStrategyConfig(action=str(item["action"]), version=soap_version))

    source = SourceConfig(
        max_attempts=_num(s_raw, "max_attempts", 3, "source", int),
        backoff_base_ms=_num(s_raw, "backoff_base_ms", 1000, "source", int),
        backoff_cap_ms=_num(s_raw, "backoff_cap_ms", 30000, "source", int),
        namespace=str(s_raw.get("namespace", "http://tempuri.org/")),
        wsdl_discovery=bool(s_raw.get("wsdl_discovery", True)),
        request_date_format=str(s_raw.get("request_date_format", "%Y-%m-%d %H:%M:%S")),
        strategies=strategies,
    )
    if source.max_attempts < 1:
        errors.append("source.max_attempts must be at least 1")

    # ── Sink ──
    k_raw = raw.get("sink") or {}
    sink = SinkConfig(
        max_attempts=_num(k_raw, "max_attempts", 3, "sink", int),
        backoff_base_ms=_num(k_raw, "backoff_base_ms", 100, "sink", int),
        backoff_cap_ms=_num(k_raw, "backoff_cap_ms", 30000, "sink", int),
        rate_limit_delay_ms=_num(k_raw, "rate_limit_delay_ms", 100, "sink", int),
        batch_size=_num(k_raw, "batch_size", 10, "sink", int),
        max_rate_limit_pause_seconds=_num(k_raw, "max_rate_limit_pause_seconds", 30, "sink"),
        date_format=str(k_raw.get("date_format", "dd/MM/yyyy HH:mm:ss")),
    )
    if sink.max_attempts < 1:
        errors.append("sink.max_attempts must be at least 1")
    if sink.batch_size < 1:
        errors.append("sink.batch_size must be at least 1")

    # ── Directory ──
    d_raw = raw.get("directory") or {}
    directory = DirectoryConfig(
        enabled=bool(d_raw.get("enabled", True)),
        search_fields=[str(f) for f in d_raw.get("search_fields", ["EmployeeID", "EmployeeCode"])],
        search_column_param=str(d_raw.get("search_column_param", "searchColumn")),
        search_value_param=str(d_raw.get("search_value_param", "searchValue")),
        id_fields=[str(f) for f in d_raw.get("id_fields", ["EmployeeID", "EmployeeId", "id"])],
    )

    # ── Token ──
    t_raw = raw.get("token") or {}
    token_buffer = _num(t_raw, "expiry_buffer_seconds", 300, "token")
    if token_buffer < 0:
        errors.append("token.expiry_buffer_seconds must not be negative")

    # ── Transform ──
    x_raw = raw.get("transform") or {}
    transform = TransformConfig(
        timezone=str(x_raw.get("timezone", "Asia/Kolkata")),
        timestamp_formats=[str(f) for f in x_raw.get("timestamp_formats", ["%Y-%m-%d %H:%M:%S"])],
        comment_template=str(x_raw.get("comment_template", "Biometric: {device_name}")),
        default_device_name=str(x_raw.get("default_device_name", "eSSL Device")),
    )
    try:
        ZoneInfo(transform.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        errors.append(f"transform.timezone = {transform.timezone!r} is not a known time zone")
    try:
        transform.comment_template.format(device_name="", device_id="", direction="")
    except (AttributeError, KeyError, IndexError, ValueError) as exc:
        errors.append(
            f"transform.comment_template = {transform.comment_template!r} is invalid ({exc!r}); "
            "placeholders are {device_name}, {device_id}, {direction}"
        )
    if not transform.timestamp_formats:
        errors.append("transform.timestamp_formats must list at least one format")

    # ── Health ──
    h_raw = raw.get("health") or {}
    health = HealthConfig(
        memory_threshold=_num(h_raw, "memory_threshold", 0.8, "health"),
        max_failure_rate=_num(h_raw, "max_failure_rate", 0.5, "health"),
        report_interval_seconds=_num(h_raw, "report_interval_seconds", 60, "health"),
    )
    for key in ("memory_threshold", "max_failure_rate"):
        value = getattr(health, key)
        if not (0.0 < value <= 1.0):
            errors.append(f"health.{key} = {value} is out of range (0.0, 1.0]")

    dedup_max = _num(raw.get("dedup") or {}, "max_entries", 10000, "dedup", int)

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        polling=polling,
        source=source,
        sink=sink,
        directory=directory,
        token_expiry_buffer_s=token_buffer,
        transform=transform,
        health=health,
        dedup_max_entries=dedup_max,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
