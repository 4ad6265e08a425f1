"""Source client for the eSSL device-controller web service.

The service sits behind a legacy ``.asmx`` endpoint whose dialect varies by
deployment.  A fetch tries, in order:

    1. JSON POST to ``<base><json_path>`` with {username, password, fromDate, toDate}
    2. SOAP POST to ``<base>`` for each configured {action, version} pair

The first strategy that returns a decodable body wins for that call only.
One pass through the list counts as one attempt of the retry policy; a pass
is retried only when at least one strategy failed transiently (no response,
5xx without a SOAP fault, 429).

Optional ``?wsdl`` discovery prunes the SOAP list to operations the service
actually exposes and substitutes its target namespace.  The discovery result
is cached for the lifetime of the client.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Awaitable, Callable

import httpx

from src.punchsync.adapters import soap
from src.punchsync.base import RawRecord
from src.punchsync.config_loader import SoapStrategyConfig, SourceConfig
from src.punchsync.errors import ProtocolNegotiationExhausted
from src.punchsync.retry import RetryPolicy, retry_async

logger = logging.getLogger("punchsync.source")

USER_AGENT = "PunchSync/1.0"

# Wrapper keys seen around the record list, checked in order.
_WRAPPER_KEYS = ("d", "data", "Data", "result", "Result", "records", "Records",
                 "transactions", "Transactions", "Table", "logs", "Logs")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class StrategyOutcome:
    """Tagged result of one negotiation strategy.

    Attributes:
        strategy:  Strategy label, e.g. ``json`` or ``soap1.2:GetTransactionsLog``.
        ok:        True when the body decoded.
        payload:   Decoded body (rows or JSON value) when ok.
        reason:    Short failure reason when not ok.
        transient: True if the failure might clear on another attempt.
    """

    strategy: str
    ok: bool
    payload: Any = None
    reason: str = ""
    transient: bool = False


@dataclass
class FetchResult:
    """Everything one fetch call produced.

    ``failed`` is True only when negotiation was exhausted after retries; an
    empty ``records`` list with ``failed=False`` is a genuine empty poll.
    """

    records: list[RawRecord] = field(default_factory=list)
    failed: bool = False
    reasons: list[str] = field(default_factory=list)
    strategy: str | None = None
    attempts: int = 0


def _status_failure(label: str, response: httpx.Response) -> StrategyOutcome:
    status = response.status_code
    transient = status >= 500 or status == 429
    return StrategyOutcome(label, ok=False, reason=f"HTTP {status}", transient=transient)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class FetchStrategy(ABC):
    """One wire dialect for the transaction query."""

    label: str = "strategy"

    @abstractmethod
    async def attempt(self, client: "SourceClient", start: str, end: str) -> StrategyOutcome:
        """Run the query once and tag the outcome; never raises for remote failures."""


class JsonStrategy(FetchStrategy):
    label = "json"

    async def attempt(self, client: "SourceClient", start: str, end: str) -> StrategyOutcome:
        body = {
            "username": client.username,
            "password": client.password,
            "fromDate": start,
            "toDate": end,
        }
        try:
            response = await client.http.post(
                client.json_url,
                json=body,
                headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
            )
        except httpx.HTTPError as exc:
            return StrategyOutcome(self.label, ok=False, reason=f"network: {exc!r}", transient=True)

        if not response.is_success:
            return _status_failure(self.label, response)
        try:
            payload = response.json()
        except ValueError:
            return StrategyOutcome(self.label, ok=False, reason="malformed JSON body")
        return StrategyOutcome(self.label, ok=True, payload=payload)


class SoapStrategy(FetchStrategy):
    """SOAP call for one {action, version} combination."""

    def __init__(self, action: str, version: str, namespace: str, soap_action: str | None = None) -> None:
        self.action = action
        self.version = version
        self.namespace = namespace
        self.soap_action = soap_action
        self.label = f"soap{version}:{action}"

    async def attempt(self, client: "SourceClient", start: str, end: str) -> StrategyOutcome:
        envelope = soap.build_envelope(
            self.action,
            self.namespace,
            {
                "username": client.username,
                "password": client.password,
                "fromDate": start,
                "toDate": end,
            },
            self.version,
        )
        headers = soap.soap_headers(self.action, self.namespace, self.version, self.soap_action)
        headers["User-Agent"] = USER_AGENT
        try:
            response = await client.http.post(client.base_url, content=envelope, headers=headers)
        except httpx.HTTPError as exc:
            return StrategyOutcome(self.label, ok=False, reason=f"network: {exc!r}", transient=True)

        # ASMX reports faults as 500 with a Fault body; those are not transient.
        has_fault = response.status_code >= 500 and soap.response_has_fault(response.content)
        if not response.is_success and not has_fault:
            return _status_failure(self.label, response)

        try:
            payload = soap.parse_response(response.content, self.action)
        except soap.SoapFault as exc:
            return StrategyOutcome(self.label, ok=False, reason=f"fault: {exc}")
        except soap.MalformedResponse as exc:
            return StrategyOutcome(self.label, ok=False, reason=f"malformed: {exc}")
        return StrategyOutcome(self.label, ok=True, payload=payload)


# ---------------------------------------------------------------------------
# Response normalization
# ---------------------------------------------------------------------------


def unwrap_records(payload: Any) -> list[dict] | None:
    """Flatten a decoded body into a list of record mappings.

    Accepts a plain array, nested result wrappers (``{"d": ...}``,
    ``{"data": [...]}``, ``{"GetTransactionDataResult": "[...]"}``) and JSON
    text nested inside those.  Returns None for shapes that carry no list.
    """
    for _ in range(8):
        if isinstance(payload, list):
            return [item for item in payload if isinstance(item, dict)]
        if isinstance(payload, str):
            text = payload.strip()
            if not text:
                return []
            if text[0] not in "[{":
                return None
            try:
                payload = json.loads(text)
            except ValueError:
                return None
            continue
        if not isinstance(payload, dict):
            return None
        if not payload:
            return []
        nested = next((payload[k] for k in _WRAPPER_KEYS if k in payload), None)
        if nested is None:
            nested = next((v for k, v in payload.items() if str(k).endswith("Result")), None)
        if nested is None and len(payload) == 1:
            nested = next(iter(payload.values()))
            if not isinstance(nested, (list, dict, str)):
                nested = None
        if nested is None:
            # A single record returned bare.
            record = RawRecord.from_mapping(payload)
            if record.employee_code or record.device_user_id:
                return [payload]
            return None
        payload = nested
    return None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class SourceClient:
    """Fetch raw punches from the device controller.

    Usage::

        client = SourceClient(base_url, username, password, config.source, tz)
        records = await client.fetch(window_start, window_end)
        await client.aclose()
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        config: SourceConfig,
        tz: tzinfo,
        json_path: str = "/GetTransactionData",
        timeout_seconds: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the source client.

        Args:
            base_url:        ``.asmx`` endpoint, e.g. ``http://host:3366/WebAPIService.asmx``.
            username:        Device web-service user.
            password:        Device web-service password.
            config:          Negotiation and retry settings.
            tz:              Zone the device expects fromDate/toDate in.
            json_path:       Path appended to base_url for the JSON dialect.
            timeout_seconds: Per-request timeout for the owned client.
            http_client:     Optional pre-configured httpx client (for testing).
            sleep:           Awaitable sleep used between retry passes.
        """
        self.base_url = base_url.rstrip("/")
        self.json_url = self.base_url + json_path
        self.username = username
        self.password = password
        self._config = config
        self._tz = tz
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._sleep = sleep
        self._policy = RetryPolicy.from_ms(config.max_attempts, config.backoff_base_ms, config.backoff_cap_ms)

        self._discovery: soap.ServiceDescription | None = None
        self._discovery_done = False

        self.request_count = 0
        self.failed_requests = 0
        self.last_strategy: str | None = None

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def fetch(self, start: datetime, end: datetime) -> list[RawRecord]:
        """Return the raw records for ``[start, end]``; empty after a declared failure."""
        return (await self.fetch_window(start, end)).records

    async def fetch_window(self, start: datetime, end: datetime) -> FetchResult:
        """Run dialect negotiation with retries and decode the winning body.

        Never raises for remote failures: exhaustion is reported through
        ``FetchResult.failed`` with every strategy's reason attached.
        """
        self.request_count += 1
        from_text = self._format(start)
        to_text = self._format(end)
        logger.debug("Fetching transactions %s → %s", from_text, to_text)

        reasons: list[str] = []
        passes = 0
        # Planned once per fetch: a discovery that could not reach the
        # service is not retried on every pass.
        strategies = await self.strategies()

        async def one_pass() -> StrategyOutcome:
            nonlocal passes
            passes += 1
            pass_reasons: list[str] = []
            transient = False
            for strategy in strategies:
                outcome = await strategy.attempt(self, from_text, to_text)
                if outcome.ok:
                    return outcome
                pass_reasons.append(f"{outcome.strategy}: {outcome.reason}")
                transient = transient or outcome.transient
                logger.debug("Source strategy %s failed: %s", outcome.strategy, outcome.reason)
            reasons.extend(pass_reasons)
            raise ProtocolNegotiationExhausted(pass_reasons, retryable=transient)

        try:
            outcome = await retry_async(one_pass, self._policy, sleep=self._sleep, label="source fetch")
        except ProtocolNegotiationExhausted as exc:
            self.failed_requests += 1
            logger.warning(
                "Source negotiation exhausted for %s → %s after %d pass(es): %s",
                from_text, to_text, passes, exc.message,
            )
            return FetchResult(failed=True, reasons=reasons, attempts=passes)

        if outcome.strategy != JsonStrategy.label:
            logger.info("Source answered via fallback %s", outcome.strategy)
        self.last_strategy = outcome.strategy

        rows = unwrap_records(outcome.payload)
        if rows is None:
            logger.warning(
                "Unexpected response shape from %s (%s); treating as empty",
                outcome.strategy, type(outcome.payload).__name__,
            )
            rows = []
        records = [RawRecord.from_mapping(row) for row in rows]
        logger.debug("Retrieved %d transactions via %s", len(records), outcome.strategy)
        return FetchResult(records=records, reasons=reasons, strategy=outcome.strategy, attempts=passes)

    def _format(self, value: datetime) -> str:
        if value.tzinfo is not None:
            value = value.astimezone(self._tz)
        return value.strftime(self._config.request_date_format)

    # ------------------------------------------------------------------
    # Negotiation plan
    # ------------------------------------------------------------------

    async def strategies(self) -> list[FetchStrategy]:
        """Ordered strategies for the next pass: JSON first, then SOAP."""
        configured: list[SoapStrategyConfig] = list(self._config.strategies)
        namespace = self._config.namespace
        soap_actions: dict[str, str] = {}

        description = await self.discover() if self._config.wsdl_discovery else None
        if description is not None:
            namespace = description.namespace or namespace
            soap_actions = description.soap_actions
            known = set(description.operations)
            pruned = [s for s in configured if s.action in known]
            if pruned:
                configured = pruned

        plan: list[FetchStrategy] = [JsonStrategy()]
        plan.extend(
            SoapStrategy(s.action, s.version, namespace, soap_actions.get(s.action))
            for s in configured
        )
        return plan

    async def discover(self) -> soap.ServiceDescription | None:
        """Fetch and parse ``?wsdl`` once; later calls return the cached answer.

        Parse failures and non-2xx answers are cached as "no description".
        Network errors are not cached; ``fetch_window`` plans once per call, so
        an unreachable service is asked again on the next cycle, not every pass.
        """
        if self._discovery_done:
            return self._discovery
        try:
            response = await self.http.get(f"{self.base_url}?wsdl", headers={"User-Agent": USER_AGENT})
        except httpx.HTTPError as exc:
            logger.debug("WSDL discovery unavailable: %r", exc)
            return None

        self._discovery_done = True
        if not response.is_success:
            logger.info("WSDL discovery returned HTTP %d; using configured strategies", response.status_code)
            return None
        try:
            self._discovery = soap.parse_wsdl(response.content)
        except soap.MalformedResponse as exc:
            logger.info("WSDL discovery unusable (%s); using configured strategies", exc)
            return None
        logger.info(
            "WSDL discovery: namespace=%s, %d operation(s)",
            self._discovery.namespace, len(self._discovery.operations),
        )
        return self._discovery

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def probe(self) -> dict:
        """Connection test: JSON, then SOAP ``TestConnection``, then a plain GET.

        Returns:
            ``{"success": bool, "method": str | None, "message": str}``
        """
        credentials = {"username": self.username, "password": self.password}
        try:
            response = await self.http.post(
                self.json_url, json=credentials, headers={"User-Agent": USER_AGENT}
            )
            if response.is_success:
                return {"success": True, "method": "JSON", "message": "connected using JSON"}
        except httpx.HTTPError:
            pass

        namespace = self._config.namespace
        try:
            response = await self.http.post(
                self.base_url,
                content=soap.build_envelope("TestConnection", namespace, credentials, "1.1"),
                headers={**soap.soap_headers("TestConnection", namespace, "1.1"), "User-Agent": USER_AGENT},
            )
            if response.is_success:
                return {"success": True, "method": "SOAP", "message": "connected using SOAP"}
        except httpx.HTTPError:
            pass

        try:
            response = await self.http.get(self.base_url, headers={"User-Agent": USER_AGENT})
        except httpx.HTTPError as exc:
            return {"success": False, "method": None, "message": f"unreachable: {exc!r}"}
        if response.is_success:
            return {"success": True, "method": "GET", "message": "service reachable"}
        return {"success": False, "method": "GET", "message": f"service returned HTTP {response.status_code}"}

    def stats(self) -> dict:
        rate = None
        if self.request_count:
            rate = round((self.request_count - self.failed_requests) / self.request_count * 100, 2)
        return {
            "request_count": self.request_count,
            "failed_requests": self.failed_requests,
            "success_rate": rate,
            "last_strategy": self.last_strategy,
            "base_url": self.base_url,
        }
