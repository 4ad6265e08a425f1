"""OAuth2 token lifecycle for the HR sink API.

TokenManager is the only owner of the sink Token.  The sink client asks it for
an access-token string and never sees the Token object.

Lifecycle::

    NO_TOKEN ──exchange_code──► VALID ──(expiry - buffer)──► EXPIRING
                                  ▲                              │
                                  └──────── REFRESHING ◄─────────┘
    any ──revoke──► REVOKED (until exchange_code supplies a new grant)

Refresh is single-flight: while one refresh is in flight, every caller of
``get_valid_token()`` / ``refresh()`` awaits that same task.  Zoho-style
providers invalidate a refresh token that is used twice concurrently, so
independent refreshes are never issued.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Callable
from urllib.parse import urlencode

import httpx

from src.punchsync.base import Token, TokenStore, utc_now
from src.punchsync.errors import AuthError, AuthUnavailable, NetworkError, ServerError

logger = logging.getLogger("punchsync.token")


class TokenState(str, Enum):
    NO_TOKEN = "no_token"
    VALID = "valid"
    EXPIRING = "expiring"
    REFRESHING = "refreshing"
    REVOKED = "revoked"


class TokenManager:
    """Hand out valid access tokens and keep them fresh.

    Usage::

        manager = TokenManager(accounts_url, client_id, client_secret, redirect_uri,
                               scope, store=state_store)
        await manager.load(bootstrap=settings_token)
        token = await manager.get_valid_token()
    """

    def __init__(
        self,
        accounts_url: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str = "",
        scope: str = "",
        store: TokenStore | None = None,
        expiry_buffer_seconds: float = 300.0,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utc_now,
        timeout_seconds: float = 30.0,
    ) -> None:
        """Initialize the token manager.

        Args:
            accounts_url:          OAuth server root, e.g. ``https://accounts.zoho.in``.
            client_id:             OAuth client ID.
            client_secret:         OAuth client secret.
            redirect_uri:          Redirect URI registered for the client.
            scope:                 Comma-separated scopes requested at consent.
            store:                 Durable token storage; None keeps tokens in memory only.
            expiry_buffer_seconds: A token stops being handed out this long before expiry.
            http_client:           Optional pre-configured httpx client (for testing).
            clock:                 Returns the current UTC time (injectable for tests).
            timeout_seconds:       Per-request timeout for the owned client.
        """
        self._accounts_url = accounts_url.rstrip("/")
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._scope = scope
        self._store = store
        self._buffer = expiry_buffer_seconds
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._clock = clock

        self._token: Token | None = None
        self._revoked = False
        self._inflight: asyncio.Task[Token] | None = None
        # Bumped by revoke and code exchange; a refresh started under an older
        # generation must not overwrite their result.
        self._generation = 0
        self.refresh_count = 0

    async def aclose(self) -> None:
        if self._inflight is not None:
            await asyncio.gather(self._inflight, return_exceptions=True)
        if self._owns_client:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> TokenState:
        if self._revoked:
            return TokenState.REVOKED
        if self._inflight is not None:
            return TokenState.REFRESHING
        if self._token is None:
            return TokenState.NO_TOKEN
        if self._token.is_usable(self._clock(), self._buffer):
            return TokenState.VALID
        return TokenState.EXPIRING

    async def load(self, bootstrap: Token | None = None) -> None:
        """Read the persisted token, falling back to ``bootstrap`` from settings.

        A bootstrap token is written to the store so later restarts find it.
        """
        stored = await self._store.load_token() if self._store else None
        if stored is not None:
            self._token = stored
            logger.info("Loaded persisted sink token (state=%s)", self.state.value)
        elif bootstrap is not None:
            self._token = bootstrap
            await self._persist(bootstrap)
            logger.info("Seeded sink token from settings (state=%s)", self.state.value)
        else:
            logger.warning("No sink token available; authorization required")

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def get_valid_token(self) -> str:
        """Return an access token that is outside the expiry buffer.

        Raises:
            AuthUnavailable: Revoked, or no token and no refresh token.
            AuthError:       The refresh was rejected.
            NetworkError:    The OAuth server could not be reached.
        """
        if self._revoked:
            raise AuthUnavailable("sink authorization was revoked; a new grant is required")
        token = self._token
        if token is not None and self._inflight is None and token.is_usable(self._clock(), self._buffer):
            return token.access_token
        if self._inflight is None and (token is None or not token.refresh_token):
            raise AuthUnavailable("no sink token and no refresh token; authorize first")
        return (await self.refresh()).access_token

    async def refresh(self) -> Token:
        """Refresh the access token, joining an in-flight refresh if there is one."""
        if self._inflight is None:
            self._inflight = asyncio.create_task(self._refresh())
        task = self._inflight
        # Shielded so one cancelled waiter cannot abort the refresh shared by all.
        return await asyncio.shield(task)

    async def refresh_if_stale(self, rejected: str) -> str:
        """Refresh after a 401, unless someone already replaced ``rejected``."""
        token = self._token
        if (
            self._inflight is None
            and token is not None
            and token.access_token != rejected
            and token.is_usable(self._clock(), self._buffer)
        ):
            return token.access_token
        if self._inflight is None and (token is None or not token.refresh_token):
            raise AuthUnavailable("sink rejected the token and no refresh token is available")
        return (await self.refresh()).access_token

    async def _refresh(self) -> Token:
        try:
            current = self._token
            generation = self._generation
            if current is None or not current.refresh_token:
                raise AuthUnavailable("no refresh token; authorize first")

            logger.info("Refreshing sink access token")
            self.refresh_count += 1
            data = await self._token_request(
                {
                    "grant_type": "refresh_token",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": current.refresh_token,
                    "redirect_uri": self._redirect_uri,
                }
            )
            try:
                token = Token.from_token_response(data, self._clock(), current.refresh_token)
            except ValueError as exc:
                raise AuthError(f"refresh returned no access token: {exc}") from exc

            if self._generation != generation:
                logger.warning("Sink authorization changed during refresh; discarding refreshed token")
                if self._revoked or self._token is None:
                    raise AuthUnavailable("sink authorization was revoked; a new grant is required")
                return self._token

            self._token = token
            await self._persist(token)
            logger.info("Sink access token refreshed, expires %s", token.expires_at)
            return token
        finally:
            self._inflight = None

    async def exchange_code(self, code: str) -> Token:
        """Trade an authorization code for tokens; clears a REVOKED state.

        Raises:
            AuthError:    The provider rejected the code.
            NetworkError: The OAuth server could not be reached.
        """
        logger.info("Exchanging authorization code for sink tokens")
        data = await self._token_request(
            {
                "grant_type": "authorization_code",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "redirect_uri": self._redirect_uri,
                "code": code,
            }
        )
        try:
            token = Token.from_token_response(data, self._clock())
        except ValueError as exc:
            raise AuthError(f"code exchange returned no access token: {exc}") from exc

        self._generation += 1
        self._token = token
        self._revoked = False
        await self._persist(token)
        logger.info("Sink authorization complete (refresh token: %s)", bool(token.refresh_token))
        return token

    async def revoke(self) -> None:
        """Revoke the grant upstream and forget it locally.

        Local state is cleared and persisted as cleared before the upstream
        call, so it holds even when that call fails.
        """
        self._generation += 1
        token = self._token
        value = (token.refresh_token or token.access_token) if token else None
        self._token = None
        self._revoked = True
        await self._persist(None)

        if value:
            try:
                response = await self._http.post(
                    f"{self._accounts_url}/oauth/v2/token/revoke", params={"token": value}
                )
                if response.status_code == 400:
                    logger.info("Sink token was already invalid at revoke time")
                elif not response.is_success:
                    logger.warning("Token revoke returned HTTP %d", response.status_code)
                else:
                    logger.info("Sink token revoked")
            except httpx.HTTPError as exc:
                logger.warning("Token revoke request failed: %r; local state already cleared", exc)

    def authorization_url(self, state: str | None = None) -> str:
        params = {
            "response_type": "code",
            "client_id": self._client_id,
            "scope": self._scope,
            "redirect_uri": self._redirect_uri,
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{self._accounts_url}/oauth/v2/auth?{urlencode(params)}"

    def info(self) -> dict:
        """Redacted snapshot for status endpoints; never includes token values."""
        token = self._token
        now = self._clock()
        return {
            "state": self.state.value,
            "has_access_token": bool(token and token.access_token),
            "has_refresh_token": bool(token and token.refresh_token),
            "valid": bool(token and token.is_usable(now, self._buffer)),
            "expires_at": token.expires_at.isoformat() if token and token.expires_at else None,
            "scope": list(token.scope) if token else [],
            "refresh_count": self.refresh_count,
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _token_request(self, form: dict[str, str]) -> dict:
        try:
            response = await self._http.post(
                f"{self._accounts_url}/oauth/v2/token",
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            raise NetworkError(f"OAuth server unreachable: {exc!r}") from exc

        if response.status_code >= 500:
            raise ServerError(f"OAuth server error {response.status_code}", response.status_code)
        try:
            data = response.json()
        except ValueError as exc:
            raise AuthError("OAuth server returned a non-JSON body", response.status_code) from exc
        if not response.is_success or not isinstance(data, dict) or data.get("error"):
            error = data.get("error") if isinstance(data, dict) else None
            raise AuthError(
                f"OAuth {form['grant_type']} grant rejected: {error or response.status_code}",
                response.status_code,
            )
        return data

    async def _persist(self, token: Token | None) -> None:
        if self._store is None:
            return
        try:
            await self._store.save_token(token)
        except Exception as exc:
            # The in-memory token stays authoritative for this process.
            logger.error("Failed to persist sink token: %s", exc)
