"""PunchSync attendance sync engine.

Moves punches from an eSSL biometric device controller into Zoho People,
adapting its polling rate to activity and surviving failures on either side.

Subpackages:
    adapters/ — Source (device web service) and sink (HR API) clients, SOAP codec
    sync/     — Orchestrator loop, interval policy, watermark, dispatch dedup

Core modules:
    base          — Canonical data models and storage interfaces
    errors        — Error taxonomy shared across components
    config_loader — Load/validate/hot-reload sync_config.yaml
    retry         — Bounded exponential-backoff retry loop
    token_manager — OAuth2 token lifecycle with single-flight refresh
    transform     — RawRecord → AttendanceEvent normalization
    health        — Cycle metrics and healthy/degraded classification
    state_store   — JSON-file token and cursor persistence
    engine        — Component wiring
"""

from src.punchsync.base import (
    AttendanceEvent,
    BatchOutcome,
    CycleOutcome,
    CycleStatus,
    Direction,
    EventResult,
    RawRecord,
    ResultKind,
    Token,
)
from src.punchsync.config_loader import SyncConfig, get_sync_config

__all__ = [
    "AttendanceEvent",
    "BatchOutcome",
    "CycleOutcome",
    "CycleStatus",
    "Direction",
    "EventResult",
    "RawRecord",
    "ResultKind",
    "Token",
    "SyncConfig",
    "get_sync_config",
]
