"""Sink client for the Zoho People attendance and employee APIs.

The attendance API is not batch-capable, so ``post_batch`` fans out one
request per event.  Every response is classified into a ResultKind:

    2xx              success, unless the body carries {code, message} → validation
    401              one refresh through the TokenManager, then one retry
    429              rate_limit, retry hint recorded, not retried here
    403 / 404        permanent
    other 4xx        validation
    5xx / network    retried with capped exponential backoff

Access tokens always come from ``TokenManager.get_valid_token()``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, tzinfo
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable

import httpx

from src.punchsync.base import AttendanceEvent, Direction, EventResult, ResultKind, utc_now
from src.punchsync.config_loader import DirectoryConfig, SinkConfig
from src.punchsync.errors import (
    AuthError,
    NetworkError,
    PermanentError,
    RateLimitError,
    ServerError,
    SyncError,
    ValidationError,
)
from src.punchsync.retry import RetryPolicy, retry_async
from src.punchsync.token_manager import TokenManager
from src.punchsync.transform import format_sink_time

logger = logging.getLogger("punchsync.sink")

USER_AGENT = "PunchSync/1.0"


def sink_error(data: Any) -> str | None:
    """Return ``"code: message"`` if a body carries a structured sink error."""
    if not isinstance(data, dict):
        return None
    errors = None
    if isinstance(data.get("response"), dict):
        errors = data["response"].get("errors")
    if errors is None:
        errors = data.get("errors")
    if isinstance(errors, list):
        errors = errors[0] if errors else None
    if isinstance(errors, dict) and errors.get("code") is not None and errors.get("message"):
        return f"{errors['code']}: {errors['message']}"
    return None


def parse_retry_after(value: str | None, now: datetime) -> float | None:
    """Seconds from a Retry-After header given as seconds or an HTTP-date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, (when - now).total_seconds())


def _result_kind(exc: SyncError) -> ResultKind:
    if isinstance(exc, AuthError):
        return ResultKind.AUTH
    try:
        return ResultKind(exc.kind)
    except ValueError:
        return ResultKind.SERVER


def _transient(exc: BaseException) -> bool:
    return isinstance(exc, (NetworkError, ServerError))


def _directory_rows(data: Any) -> list[dict]:
    if isinstance(data, dict):
        for key in ("data", "result"):
            if isinstance(data.get(key), list):
                return _directory_rows(data[key])
        if isinstance(data.get("response"), dict):
            return _directory_rows(data["response"])
        return []
    if not isinstance(data, list):
        return []
    rows: list[dict] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        # Forms API shape: [{"<record id>": [{...fields...}]}]
        if len(item) == 1:
            only = next(iter(item.values()))
            if isinstance(only, list) and only and isinstance(only[0], dict):
                rows.append(only[0])
                continue
        rows.append(item.get("values") if isinstance(item.get("values"), dict) else item)
    return rows


class SinkClient:
    """Post attendance events and search the employee directory.

    Usage::

        client = SinkClient(attendance_url, employee_url, token_manager,
                            config.sink, config.directory, tz)
        results = await client.post_batch(events)
    """

    def __init__(
        self,
        attendance_url: str,
        employee_url: str,
        tokens: TokenManager,
        config: SinkConfig,
        directory: DirectoryConfig,
        tz: tzinfo,
        auth_scheme: str = "Zoho-oauthtoken",
        timeout_seconds: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._attendance_url = attendance_url
        self._employee_url = employee_url
        self._tokens = tokens
        self._config = config
        self._directory = directory
        self._tz = tz
        self._scheme = auth_scheme
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._sleep = sleep
        self._clock = clock
        self._policy = RetryPolicy.from_ms(config.max_attempts, config.backoff_base_ms, config.backoff_cap_ms)

        self.request_count = 0
        self.failed_requests = 0
        self.rate_limit_reset: datetime | None = None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Attendance
    # ------------------------------------------------------------------

    def attendance_params(self, event: AttendanceEvent) -> dict[str, str]:
        """Query parameters for one attendance write.

        OUT punches are sent as ``checkOut``; an explicit check-out on an IN
        punch is sent alongside ``checkIn``.
        """
        stamp = format_sink_time(event.timestamp, self._config.date_format, self._tz)
        params = {"empId": event.employee_id, "dateFormat": self._config.date_format}
        if event.direction is Direction.OUT:
            params["checkOut"] = stamp
        else:
            params["checkIn"] = stamp
            if event.check_out is not None:
                params["checkOut"] = format_sink_time(event.check_out, self._config.date_format, self._tz)
        return params

    async def post_event(self, event: AttendanceEvent) -> EventResult:
        """Post one event; never raises for remote failures."""
        self.request_count += 1
        params = self.attendance_params(event)
        attempts = 0
        refreshed = False

        async def send() -> None:
            nonlocal attempts, refreshed
            token = await self._tokens.get_valid_token()
            attempts += 1
            response = await self._request("POST", self._attendance_url, params, token)
            if response.status_code == 401 and not refreshed:
                refreshed = True
                logger.info("Sink rejected token for %s; refreshing once", event.employee_id)
                token = await self._tokens.refresh_if_stale(token)
                attempts += 1
                response = await self._request("POST", self._attendance_url, params, token)
            self._raise_for_status(response)

        try:
            await retry_async(
                send, self._policy, sleep=self._sleep, should_retry=_transient,
                label=f"attendance {event.employee_id}",
            )
        except SyncError as exc:
            self.failed_requests += 1
            kind = _result_kind(exc)
            level = logging.WARNING if kind in (ResultKind.RATE_LIMIT, ResultKind.VALIDATION) else logging.ERROR
            logger.log(
                level, "Punch for %s at %s failed (%s): %s",
                event.employee_id, params.get("checkIn") or params.get("checkOut"), kind.value, exc.message,
            )
            return EventResult(event=event, kind=kind, error=exc, attempts=attempts, refreshed=refreshed)

        logger.debug("Punch synced for %s (%d attempt(s))", event.employee_id, attempts)
        return EventResult(event=event, kind=ResultKind.SUCCESS, attempts=attempts, refreshed=refreshed)

    async def post_batch(self, events: list[AttendanceEvent]) -> list[EventResult]:
        """Post every event concurrently; results come back in input order."""
        if not events:
            return []
        return list(await asyncio.gather(*(self.post_event(e) for e in events)))

    # ------------------------------------------------------------------
    # Directory
    # ------------------------------------------------------------------

    async def find_employee(self, code: str) -> str | None:
        """Search the directory for ``code`` across the configured fields.

        A field the sink rejects (validation, 403/404) is skipped.  ``None``
        means every field answered and none matched.

        Raises:
            AuthError:  The token was refused again after one refresh; no
                        further lookup can succeed with it.
            SyncError:  Network or server failure after retries, so the
                        answer is unknown rather than a miss.
        """
        if not self._directory.enabled:
            return None
        refreshed = False
        for search_field in self._directory.search_fields:
            params = {
                self._directory.search_column_param: search_field,
                self._directory.search_value_param: code,
            }

            async def search() -> Any:
                nonlocal refreshed
                data, did_refresh = await self._get(self._employee_url, params, allow_refresh=not refreshed)
                refreshed = refreshed or did_refresh
                return data

            try:
                data = await retry_async(
                    search, self._policy, sleep=self._sleep, should_retry=_transient,
                    label=f"directory {search_field}={code}",
                )
            except (ValidationError, PermanentError) as exc:
                logger.debug("Directory search %s=%s rejected: %s", search_field, code, exc.message)
                continue
            if (error := sink_error(data)) is not None:
                logger.debug("Directory search %s=%s: %s", search_field, code, error)
                continue
            for row in _directory_rows(data)[:1]:
                for id_field in self._directory.id_fields:
                    value = row.get(id_field)
                    if value not in (None, ""):
                        logger.info("Directory matched %s via %s → %s", code, search_field, value)
                        return str(value)
        logger.warning("No directory match for employee code %s", code)
        return None

    async def list_employees(self) -> list[dict]:
        """Fetch the employee directory listing.

        Raises:
            SyncError: On any classified failure.
        """
        data, _ = await self._get(self._employee_url, {})
        if (error := sink_error(data)) is not None:
            raise ValidationError(f"directory listing rejected: {error}")
        return _directory_rows(data)

    async def _get(self, url: str, params: dict[str, str], allow_refresh: bool = True) -> tuple[Any, bool]:
        """GET a JSON body; returns it with whether a token refresh was spent."""
        token = await self._tokens.get_valid_token()
        response = await self._request("GET", url, params, token)
        refreshed = False
        if response.status_code == 401 and allow_refresh:
            refreshed = True
            logger.info("Directory rejected token; refreshing once")
            token = await self._tokens.refresh_if_stale(token)
            response = await self._request("GET", url, params, token)
        self._raise_for_status(response, check_body=False)
        try:
            return response.json(), refreshed
        except ValueError as exc:
            raise ValidationError("directory returned a non-JSON body") from exc

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def probe(self) -> dict:
        """Connection test against the directory listing."""
        token_info = self._tokens.info()
        if not token_info["has_access_token"] and not token_info["has_refresh_token"]:
            return {"success": False, "message": "no sink token; authorize first", "token": token_info}
        try:
            employees = await self.list_employees()
        except SyncError as exc:
            return {"success": False, "message": f"{exc.kind}: {exc.message}", "token": self._tokens.info()}
        return {
            "success": True,
            "message": f"connected, {len(employees)} employee record(s) visible",
            "token": self._tokens.info(),
        }

    def stats(self) -> dict:
        rate = None
        if self.request_count:
            rate = round((self.request_count - self.failed_requests) / self.request_count * 100, 2)
        return {
            "request_count": self.request_count,
            "failed_requests": self.failed_requests,
            "success_rate": rate,
            "rate_limit_reset": self.rate_limit_reset.isoformat() if self.rate_limit_reset else None,
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, params: dict[str, str], token: str) -> httpx.Response:
        headers = {
            "Authorization": f"{self._scheme} {token}",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        try:
            return await self._http.request(method, url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise NetworkError(f"no response from sink: {exc!r}") from exc

    def _raise_for_status(self, response: httpx.Response, check_body: bool = True) -> None:
        status = response.status_code
        if response.is_success:
            if check_body:
                try:
                    data = response.json()
                except ValueError:
                    return
                if (error := sink_error(data)) is not None:
                    raise ValidationError(f"sink rejected punch: {error}")
            return

        detail = None
        try:
            detail = sink_error(response.json())
        except ValueError:
            pass

        if status == 401:
            raise AuthError(detail or "sink rejected the access token", status)
        if status == 429:
            now = self._clock()
            retry_after = parse_retry_after(response.headers.get("Retry-After"), now)
            if retry_after is not None:
                self.rate_limit_reset = now + timedelta(seconds=retry_after)
            raise RateLimitError(retry_after=retry_after)
        if status in (403, 404):
            raise PermanentError(detail or f"sink returned HTTP {status}", status)
        if status >= 500:
            raise ServerError(detail or f"sink server error {status}", status)
        raise ValidationError(detail or f"sink returned HTTP {status}: {response.text[:200]}")
