"""Error taxonomy shared by the source client, sink client, token manager and orchestrator.

Every remote failure is translated into one of these types at the client
boundary.  Code above the clients never sees ``httpx`` exceptions.

``retryable`` tells the shared retry loop whether another attempt can help;
``kind`` is a short slug used in logs, per-event results and health snapshots.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""

    kind: str = "error"
    retryable: bool = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind


class NetworkError(SyncError):
    """No response at all: connect failure, timeout, reset."""

    kind = "network"
    retryable = True


class ServerError(SyncError):
    """Remote answered with a 5xx status."""

    kind = "server"
    retryable = True

    def __init__(self, message: str = "", status: int | None = None) -> None:
        super().__init__(message or f"server error {status}")
        self.status = status


class RateLimitError(SyncError):
    """Remote answered 429.

    Attributes:
        retry_after: Seconds the remote asked us to wait, if it said.
    """

    kind = "rate_limit"
    retryable = True

    def __init__(self, message: str = "", retry_after: float | None = None) -> None:
        super().__init__(
            message or f"rate limited, retry after {retry_after if retry_after is not None else 'unknown'}"
        )
        self.retry_after = retry_after


class AuthError(SyncError):
    """401 from the sink, or a failed token exchange/refresh."""

    kind = "auth"

    def __init__(self, message: str = "", status: int | None = None) -> None:
        super().__init__(message or "authentication failed")
        self.status = status


class AuthUnavailable(AuthError):
    """No usable token and no refresh path (never authorized, or revoked)."""

    kind = "auth_unavailable"


class ValidationError(SyncError):
    """A single record or event is unusable (unmapped employee, bad timestamp, rejected payload)."""

    kind = "validation"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class PermanentError(SyncError):
    """403/404 from the sink; retrying the same request cannot succeed."""

    kind = "permanent"

    def __init__(self, message: str = "", status: int | None = None) -> None:
        super().__init__(message or f"permanent failure {status}")
        self.status = status


class ProtocolNegotiationExhausted(SyncError):
    """Every JSON/SOAP dialect combination failed for one fetch call.

    Attributes:
        reasons: One ``"<strategy>: <reason>"`` string per failed attempt.
    """

    kind = "negotiation_exhausted"

    def __init__(self, reasons: list[str], retryable: bool = False) -> None:
        summary = "; ".join(reasons[-5:]) if reasons else "no strategies configured"
        super().__init__(f"all source dialects failed: {summary}")
        self.reasons = list(reasons)
        # A pass that saw any transient failure is worth another try.
        self.retryable = retryable


class ConfigurationError(SyncError):
    """Required static configuration is missing or invalid.  Fatal at startup only."""

    kind = "configuration"

    def __init__(self, message: str = "", missing: list[str] | None = None) -> None:
        self.missing = list(missing or [])
        if not message and self.missing:
            message = "missing required settings: " + ", ".join(self.missing)
        super().__init__(message or "invalid configuration")
