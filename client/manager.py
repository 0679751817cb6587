"""
client/manager.py -- Outbound credential manager for Sprue API clients.

CredentialManager wraps an httpx.AsyncClient and handles the client half of
the token lifecycle:

  1. Every call outside the auth endpoints gets "Authorization: Bearer <access>".
  2. A 401 triggers one refresh exchange, then the original call is retried
     exactly once with the new access token. The retry's result is returned
     as-is; a retry never triggers another refresh.
  3. If the server refuses the refresh token (400/401), all held credentials
     are cleared and the caller gets AuthenticationError carrying the original
     401 response. Any other failure (5xx, 429, transport error) propagates as
     the httpx error and the credentials are kept for a later attempt.
  4. Calls to the auth endpoints (signup/login/refresh/logout) bypass 1-3, so
     a failing refresh can never recurse into another refresh.

Concurrency: refresh tokens are single-use, so N calls failing together must
not run N exchanges -- all but one would be refused and the client would log
itself out. The first caller starts one asyncio.Task for the exchange; every
other caller awaits that same task through asyncio.shield, so one caller
being cancelled does not cancel the exchange for the rest. A caller whose
401 arrives after the exchange already finished sees a changed access token
and simply retries with it.

logout() cancels an in-flight exchange. Callers waiting on it get
AuthenticationError instead of being retried with discarded credentials.

Persistence: pass on_change to save credentials somewhere durable. It is
called with the new Credentials after signup, login and every refresh, and
with None when they are cleared. Restore them at startup with
set_credentials().

Usage:
    async with CredentialManager("http://localhost:8000") as api:
        await api.login("a@x.com", "Secret123!")
        resp = await api.get("/api/v1/account")
        await api.logout()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from collections.abc import Callable
from typing import Any, Optional

import httpx

from client.errors import AuthenticationError

logger = logging.getLogger("sprue.client")

AUTH_PREFIX = "/api/v1/auth/"

# Refresh responses that mean the refresh token itself is no good.
_REFUSED_STATUSES = (400, 401)


@dataclass(frozen=True)
class Credentials:
    access_token: str
    refresh_token: str
    user_id: Optional[str] = None
    email: Optional[str] = None


class CredentialManager:
    def __init__(
        self,
        base_url: str = "",
        *,
        client: Optional[httpx.AsyncClient] = None,
        auth_prefix: str = AUTH_PREFIX,
        timeout: float = 10.0,
        on_change: Optional[Callable[[Optional[Credentials]], None]] = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._owns_client = client is None
        self._auth_prefix = auth_prefix
        self._credentials: Optional[Credentials] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._on_change = on_change

    async def __aenter__(self) -> "CredentialManager":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self._cancel_refresh()
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Credential state
    # ------------------------------------------------------------------

    @property
    def credentials(self) -> Optional[Credentials]:
        return self._credentials

    @property
    def is_authenticated(self) -> bool:
        return self._credentials is not None

    def set_credentials(self, credentials: Optional[Credentials]) -> None:
        """Replace the held credentials, e.g. ones an earlier process saved via on_change.

        Does not call on_change.
        """
        self._credentials = credentials

    # ------------------------------------------------------------------
    # Auth endpoints
    # ------------------------------------------------------------------

    async def signup(self, email: str, password: str) -> Credentials:
        return await self._authenticate("signup", email, password)

    async def login(self, email: str, password: str) -> Credentials:
        return await self._authenticate("login", email, password)

    async def logout(self) -> None:
        """Drop local credentials, cancel any in-flight refresh, revoke server-side.

        The revoke call is best effort: local credentials are gone even if the
        server cannot be reached.
        """
        held = self._credentials
        self._cancel_refresh()
        self._store(None)
        if held is None:
            return
        try:
            await self._client.post(self._auth_url("logout"), json={"refreshToken": held.refresh_token})
        except httpx.HTTPError as e:
            logger.warning("Logout revoke failed: %s", e)

    async def refresh(self) -> Credentials:
        """Run (or join) the single in-flight refresh exchange.

        Raises AuthenticationError if there is nothing to refresh with, the
        server refuses the token, or logout cancels the exchange.
        """
        task = self._refresh_task
        if task is None:
            held = self._credentials
            if held is None:
                raise AuthenticationError("Not authenticated.")
            task = asyncio.create_task(self._exchange(held))
            self._refresh_task = task
        try:
            credentials = await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise AuthenticationError("Session ended while refreshing credentials.") from None
            raise
        if credentials is None:
            raise AuthenticationError("Session expired.")
        return credentials

    # ------------------------------------------------------------------
    # Authenticated calls
    # ------------------------------------------------------------------

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._is_auth_endpoint(url):
            return await self._client.request(method, url, **kwargs)

        sent_token = self._access_token()
        response = await self._send(method, url, sent_token, kwargs)
        if response.status_code != 401:
            return response

        current = self._access_token()
        if current is not None and current != sent_token:
            # Another caller refreshed while this call was in flight.
            return await self._send(method, url, current, kwargs)

        try:
            credentials = await self.refresh()
        except AuthenticationError as e:
            raise AuthenticationError(str(e), response=response) from None
        return await self._send(method, url, credentials.access_token, kwargs)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _authenticate(self, action: str, email: str, password: str) -> Credentials:
        resp = await self._client.post(self._auth_url(action), json={"email": email, "password": password})
        resp.raise_for_status()
        data = resp.json()
        user = data.get("user") or {}
        return self._store(
            Credentials(
                access_token=data["accessToken"],
                refresh_token=data["refreshToken"],
                user_id=user.get("id"),
                email=user.get("email"),
            )
        )

    async def _exchange(self, held: Credentials) -> Optional[Credentials]:
        """POST the refresh token. Returns the new credentials, or None after a forced logout.

        Raises httpx.HTTPStatusError for any other non-2xx answer, keeping the
        held credentials.
        """
        try:
            resp = await self._client.post(self._auth_url("refresh"), json={"refreshToken": held.refresh_token})
            if resp.status_code in _REFUSED_STATUSES:
                logger.info("Refresh refused (%d); clearing credentials", resp.status_code)
                self._store(None)
                return None
            resp.raise_for_status()
            data = resp.json()
            return self._store(replace(held, access_token=data["accessToken"], refresh_token=data["refreshToken"]))
        finally:
            if self._refresh_task is asyncio.current_task():
                self._refresh_task = None

    def _store(self, credentials: Optional[Credentials]) -> Optional[Credentials]:
        self._credentials = credentials
        if self._on_change is not None:
            self._on_change(credentials)
        return credentials

    def _cancel_refresh(self) -> None:
        task = self._refresh_task
        self._refresh_task = None
        if task is not None and not task.done():
            task.cancel()

    async def _send(self, method: str, url: str, token: Optional[str], kwargs: dict) -> httpx.Response:
        headers = httpx.Headers(kwargs.get("headers"))
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return await self._client.request(method, url, **{**kwargs, "headers": headers})

    def _access_token(self) -> Optional[str]:
        return self._credentials.access_token if self._credentials else None

    def _auth_url(self, action: str) -> str:
        return f"{self._auth_prefix}{action}"

    def _is_auth_endpoint(self, url: str) -> bool:
        return httpx.URL(url).path.startswith(self._auth_prefix)
