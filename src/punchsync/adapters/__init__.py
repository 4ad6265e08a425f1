"""HTTP clients for the device controller (source) and the HR system (sink)."""

from src.punchsync.adapters.sink import SinkClient
from src.punchsync.adapters.source import FetchResult, SourceClient

__all__ = ["FetchResult", "SinkClient", "SourceClient"]
