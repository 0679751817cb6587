"""
tests/test_client_manager.py -- Tests for client/manager.py (CredentialManager).

Most tests run the manager against an in-process fake server through
httpx.MockTransport, so the number of refresh exchanges and the headers of
every call can be counted exactly. The last class drives the real FastAPI
app through httpx.ASGITransport.

Covers:
  - Bearer header attached to ordinary calls, never to auth endpoints
  - 401 -> one refresh -> one retry; the retry's 401 is returned as-is
  - Concurrent 401s share one refresh exchange
  - A 401 that lands after a finished refresh retries with the new token
  - Refused refresh clears credentials and raises with the original 401
  - Logout during an in-flight refresh cancels every queued retry
  - Transport failure or a 5xx/429 from refresh keeps credentials
  - on_change sees every credential change
  - Expired access token against the real app is refreshed transparently
  - The app lifespan is back to the real one after the API test modules
"""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from api.limiter import limiter
from api.main import app
from auth.tokens import sign, utcnow
from client import AuthenticationError, CredentialManager, Credentials

BASE_URL = "http://sprue.test"
PASSWORD = "Secret123!"


class FakeServer:
    """Minimal stand-in for the Sprue API with single-use refresh tokens."""

    def __init__(self) -> None:
        self.valid_access = {"access-1"}
        self.refresh_tokens = {"refresh-1"}
        self.generation = 1
        self.exchanges = 0
        self.protected_calls: list[str | None] = []
        self.last_request: httpx.Request | None = None
        self.auth_calls: list[tuple[str, str | None]] = []
        self.revoked: list[str] = []
        self.refresh_delay = 0.0
        self.refresh_gate: asyncio.Event | None = None
        self.refresh_error: Exception | None = None
        self.refresh_status: int | None = None
        self.slow_gate: asyncio.Event | None = None
        self.reject_all = False

    def expire_access(self) -> None:
        self.valid_access.clear()

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/api/v1/auth/"):
            self.auth_calls.append((path, request.headers.get("Authorization")))
            return await self._auth(path, request)

        auth = request.headers.get("Authorization")
        self.protected_calls.append(auth)
        self.last_request = request
        if path == "/api/v1/slow" and self.slow_gate is not None:
            await self.slow_gate.wait()
        if not self.reject_all and auth and auth.removeprefix("Bearer ") in self.valid_access:
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(401, json={"error": {"code": "unauthenticated"}})

    async def _auth(self, path: str, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        if path == "/api/v1/auth/refresh":
            self.exchanges += 1
            if self.refresh_error is not None:
                raise self.refresh_error
            if self.refresh_status is not None:
                return httpx.Response(self.refresh_status, json={"error": {"code": "unavailable"}})
            if self.refresh_gate is not None:
                await self.refresh_gate.wait()
            if self.refresh_delay:
                await asyncio.sleep(self.refresh_delay)
            token = body.get("refreshToken")
            if token not in self.refresh_tokens:
                return httpx.Response(401, json={"error": {"code": "unauthenticated"}})
            self.refresh_tokens.discard(token)
            return httpx.Response(200, json=self._issue())
        if path == "/api/v1/auth/logout":
            self.revoked.append(body.get("refreshToken"))
            self.refresh_tokens.discard(body.get("refreshToken"))
            return httpx.Response(200, json={"message": "Logged out."})
        if path == "/api/v1/auth/login":
            if body.get("password") != PASSWORD:
                return httpx.Response(401, json={"error": {"code": "unauthenticated"}})
            return httpx.Response(200, json={**self._issue(), "user": {"id": "acct-1", "email": body["email"]}})
        return httpx.Response(404)

    def _issue(self) -> dict:
        self.generation += 1
        access, refresh = f"access-{self.generation}", f"refresh-{self.generation}"
        self.valid_access.add(access)
        self.refresh_tokens.add(refresh)
        return {"accessToken": access, "refreshToken": refresh}


def _manager(server: FakeServer) -> CredentialManager:
    client = httpx.AsyncClient(transport=httpx.MockTransport(server), base_url=BASE_URL)
    return CredentialManager(client=client)


def _logged_in(server: FakeServer) -> CredentialManager:
    api = _manager(server)
    api.set_credentials(Credentials(access_token="access-1", refresh_token="refresh-1"))
    return api


# ---------------------------------------------------------------------------
# Header attachment and bypass
# ---------------------------------------------------------------------------


class TestAttach:
    def test_bearer_header_attached(self):
        server = FakeServer()

        async def scenario():
            api = _logged_in(server)
            return await api.get("/api/v1/items")

        resp = asyncio.run(scenario())
        assert resp.status_code == 200
        assert server.protected_calls == ["Bearer access-1"]

    def test_caller_headers_preserved(self):
        server = FakeServer()

        async def scenario():
            api = _logged_in(server)
            return await api.get("/api/v1/items", headers={"X-Trace": "abc"})

        assert asyncio.run(scenario()).status_code == 200
        assert server.last_request.headers["X-Trace"] == "abc"
        assert server.last_request.headers["Authorization"] == "Bearer access-1"

    def test_login_stores_credentials(self):
        server = FakeServer()

        async def scenario():
            api = _manager(server)
            creds = await api.login("a@x.com", PASSWORD)
            return api, creds

        api, creds = asyncio.run(scenario())
        assert api.is_authenticated
        assert creds.user_id == "acct-1"
        assert creds.access_token in server.valid_access

    def test_auth_endpoints_bypass_refresh(self):
        server = FakeServer()

        async def scenario():
            api = _logged_in(server)
            with pytest.raises(httpx.HTTPStatusError):
                await api.login("a@x.com", "wrong-password")
            return await api.post("/api/v1/auth/refresh", json={"refreshToken": "unknown"})

        resp = asyncio.run(scenario())
        assert resp.status_code == 401
        assert server.exchanges == 1
        assert all(header is None for _, header in server.auth_calls)

    def test_no_credentials_raises_without_exchange(self):
        server = FakeServer()

        async def scenario():
            api = _manager(server)
            with pytest.raises(AuthenticationError) as exc_info:
                await api.get("/api/v1/items")
            return exc_info.value

        err = asyncio.run(scenario())
        assert err.response.status_code == 401
        assert server.protected_calls == [None]
        assert server.exchanges == 0


# ---------------------------------------------------------------------------
# Refresh and retry
# ---------------------------------------------------------------------------


class TestRefreshAndRetry:
    def test_401_refreshes_and_retries_once(self):
        server = FakeServer()
        server.expire_access()

        async def scenario():
            api = _logged_in(server)
            resp = await api.get("/api/v1/items")
            return resp, api.credentials

        resp, creds = asyncio.run(scenario())
        assert resp.status_code == 200
        assert server.exchanges == 1
        assert server.protected_calls == ["Bearer access-1", "Bearer access-2"]
        assert creds.refresh_token == "refresh-2"

    def test_retry_401_is_returned_without_second_refresh(self):
        server = FakeServer()
        server.reject_all = True

        async def scenario():
            api = _logged_in(server)
            return await api.get("/api/v1/items")

        resp = asyncio.run(scenario())
        assert resp.status_code == 401
        assert server.exchanges == 1
        assert len(server.protected_calls) == 2

    def test_concurrent_401s_share_one_exchange(self):
        server = FakeServer()
        server.expire_access()
        server.refresh_delay = 0.01

        async def scenario():
            api = _logged_in(server)
            return await asyncio.gather(*(api.get("/api/v1/items") for _ in range(5)))

        responses = asyncio.run(scenario())
        assert [r.status_code for r in responses] == [200] * 5
        assert server.exchanges == 1
        assert server.protected_calls.count("Bearer access-2") == 5

    def test_late_401_uses_already_refreshed_token(self):
        server = FakeServer()
        server.expire_access()

        async def scenario():
            server.slow_gate = asyncio.Event()
            api = _logged_in(server)
            slow = asyncio.create_task(api.get("/api/v1/slow"))
            while not server.protected_calls:
                await asyncio.sleep(0)
            fast = await api.get("/api/v1/items")
            server.slow_gate.set()
            return fast, await slow

        fast, slow = asyncio.run(scenario())
        assert fast.status_code == 200
        assert slow.status_code == 200
        assert server.exchanges == 1

    def test_refused_refresh_clears_credentials(self):
        server = FakeServer()
        server.expire_access()
        server.refresh_tokens.clear()

        async def scenario():
            api = _logged_in(server)
            with pytest.raises(AuthenticationError) as exc_info:
                await api.get("/api/v1/items")
            return api, exc_info.value

        api, err = asyncio.run(scenario())
        assert api.credentials is None
        assert err.response.status_code == 401
        assert err.response.request.url.path == "/api/v1/items"
        assert server.exchanges == 1

    def test_refresh_transport_error_keeps_credentials(self):
        server = FakeServer()
        server.expire_access()
        server.refresh_error = httpx.ConnectError("connection refused")

        async def scenario():
            api = _logged_in(server)
            with pytest.raises(httpx.ConnectError):
                await api.get("/api/v1/items")
            return api

        api = asyncio.run(scenario())
        assert api.credentials.refresh_token == "refresh-1"

    @pytest.mark.parametrize("status", [500, 502, 503, 429])
    def test_refresh_server_error_keeps_credentials(self, status):
        server = FakeServer()
        server.expire_access()
        server.refresh_status = status

        async def scenario():
            api = _logged_in(server)
            with pytest.raises(httpx.HTTPStatusError) as exc_info:
                await api.get("/api/v1/items")
            return api, exc_info.value

        api, err = asyncio.run(scenario())
        assert err.response.status_code == status
        assert api.credentials == Credentials(access_token="access-1", refresh_token="refresh-1")
        assert server.exchanges == 1

    def test_refresh_works_after_server_recovers(self):
        server = FakeServer()
        server.expire_access()
        server.refresh_status = 503

        async def scenario():
            api = _logged_in(server)
            with pytest.raises(httpx.HTTPStatusError):
                await api.get("/api/v1/items")
            server.refresh_status = None
            return await api.get("/api/v1/items")

        resp = asyncio.run(scenario())
        assert resp.status_code == 200
        assert server.exchanges == 2

    def test_refresh_400_is_a_refusal(self):
        server = FakeServer()
        server.expire_access()
        server.refresh_status = 400

        async def scenario():
            api = _logged_in(server)
            with pytest.raises(AuthenticationError):
                await api.get("/api/v1/items")
            return api

        assert asyncio.run(scenario()).credentials is None


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------


class TestLogout:
    def test_logout_revokes_and_clears(self):
        server = FakeServer()

        async def scenario():
            api = _logged_in(server)
            await api.logout()
            return api

        api = asyncio.run(scenario())
        assert api.credentials is None
        assert server.revoked == ["refresh-1"]

    def test_logout_during_refresh_cancels_queued_retries(self):
        server = FakeServer()
        server.expire_access()

        async def scenario():
            server.refresh_gate = asyncio.Event()
            api = _logged_in(server)
            calls = [asyncio.create_task(api.get("/api/v1/items")) for _ in range(3)]
            while server.exchanges == 0:
                await asyncio.sleep(0)
            for _ in range(5):
                await asyncio.sleep(0)
            await api.logout()
            results = await asyncio.gather(*calls, return_exceptions=True)
            return api, results

        api, results = asyncio.run(scenario())
        assert all(isinstance(r, AuthenticationError) for r in results)
        assert api.credentials is None
        assert server.exchanges == 1
        assert server.protected_calls == ["Bearer access-1"] * 3
        assert server.revoked == ["refresh-1"]

    def test_logout_survives_unreachable_server(self):
        async def scenario():
            def unreachable(request):
                raise httpx.ConnectError("connection refused")

            client = httpx.AsyncClient(transport=httpx.MockTransport(unreachable), base_url=BASE_URL)
            api = CredentialManager(client=client)
            api.set_credentials(Credentials(access_token="a", refresh_token="r"))
            await api.logout()
            return api

        assert asyncio.run(scenario()).credentials is None


# ---------------------------------------------------------------------------
# Persistence hook
# ---------------------------------------------------------------------------


class TestOnChange:
    """on_change lets a caller keep credentials across restarts."""

    def test_on_change_sees_login_refresh_and_logout(self):
        server = FakeServer()
        saved: list[Credentials | None] = []

        async def scenario():
            client = httpx.AsyncClient(transport=httpx.MockTransport(server), base_url=BASE_URL)
            api = CredentialManager(client=client, on_change=saved.append)
            await api.login("a@x.com", PASSWORD)
            server.expire_access()
            await api.get("/api/v1/items")
            await api.logout()

        asyncio.run(scenario())
        assert [c.refresh_token if c else None for c in saved] == ["refresh-2", "refresh-3", None]

    def test_restored_credentials_are_used(self):
        server = FakeServer()
        saved: list[Credentials | None] = []

        async def scenario():
            client = httpx.AsyncClient(transport=httpx.MockTransport(server), base_url=BASE_URL)
            api = CredentialManager(client=client, on_change=saved.append)
            api.set_credentials(Credentials(access_token="access-1", refresh_token="refresh-1"))
            return await api.get("/api/v1/items")

        assert asyncio.run(scenario()).status_code == 200
        assert saved == []
        assert server.protected_calls == ["Bearer access-1"]


# ---------------------------------------------------------------------------
# End to end against the real app
# ---------------------------------------------------------------------------


class TestAgainstApp:
    """The manager and the FastAPI app agree on the wire contract."""

    @pytest.fixture(autouse=True)
    def _wire_app(self, service, monkeypatch):
        monkeypatch.setattr(app.state, "auth", service, raising=False)
        monkeypatch.setattr(limiter, "enabled", False)

    @staticmethod
    def _asgi_client() -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")

    def test_expired_access_token_refreshed_transparently(self, service):
        account, pair = service.signup("d@x.com", PASSWORD)
        stale = sign(
            account.id,
            account.email,
            service.settings.access_token_secret,
            timedelta(minutes=15),
            now=utcnow() - timedelta(minutes=31),
        )

        async def scenario():
            async with self._asgi_client() as http:
                api = CredentialManager(client=http)
                api.set_credentials(Credentials(stale, pair.refresh_token, account.id, account.email))
                resp = await api.get("/api/v1/account")
                return resp, api.credentials

        resp, creds = asyncio.run(scenario())
        assert resp.status_code == 200
        assert resp.json()["email"] == "d@x.com"
        assert creds.access_token != stale
        assert creds.refresh_token != pair.refresh_token
        assert service.registry.get(pair.refresh_token) is None
        assert service.registry.get(creds.refresh_token) is not None

    def test_signup_then_logout(self, service):
        async def scenario():
            async with self._asgi_client() as http:
                api = CredentialManager(client=http)
                creds = await api.signup("e@x.com", PASSWORD)
                me = await api.get("/api/v1/account")
                await api.logout()
                return creds, me, api.is_authenticated

        creds, me, still_authenticated = asyncio.run(scenario())
        assert me.json()["id"] == creds.user_id
        assert not still_authenticated
        assert service.registry.count_for_account(creds.user_id) == 0


def test_app_lifespan_restored_after_api_modules():
    """API test modules swap in a test lifespan; it must not outlive them."""
    assert "_patch_lifespan" not in getattr(app.router.lifespan_context, "__qualname__", "")
