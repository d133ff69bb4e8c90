import asyncio
import json

import httpx
import pytest

from mediastore.errors import ApiError, AuthenticationError
from mediastore.http_client import ApiClient
from mediastore.session import AuthSession

BASE_URL = "http://mediastore.test/api"


def _envelope(data=None, code: int = 0, message: str = "success", status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json={"code": code, "message": message, "data": data})


class _RefreshingServer:
    """Accepts only ``valid_token`` and hands out ``new-<n>`` tokens on refresh."""

    def __init__(self, refresh_ok: bool = True) -> None:
        self.valid_token = "new-1"
        self.refresh_calls = 0
        self.refresh_ok = refresh_ok
        self.seen_tokens: list[str] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/auth/refresh":
            self.refresh_calls += 1
            await asyncio.sleep(0.01)
            if not self.refresh_ok:
                return _envelope(code=401, message="invalid token", status_code=401)
            assert json.loads(request.content) == {"refreshToken": "refresh-1"}
            return _envelope({"accessToken": self.valid_token, "refreshToken": "refresh-2"})

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        self.seen_tokens.append(token)
        await asyncio.sleep(0.01)
        if token != self.valid_token:
            return _envelope(code=401, message="invalid token", status_code=401)
        return _envelope({"ok": True})


def _client(session: AuthSession, handler) -> ApiClient:
    return ApiClient(session, base_url=BASE_URL, transport=httpx.MockTransport(handler))


def test_concurrent_401s_share_one_refresh() -> None:
    server = _RefreshingServer()
    session = AuthSession("expired", "refresh-1")

    async def scenario() -> list[dict]:
        async with _client(session, server) as api:
            return await asyncio.gather(*(api.request("GET", "/files") for _ in range(5)))

    results = asyncio.run(scenario())

    assert [item["data"] for item in results] == [{"ok": True}] * 5
    assert server.refresh_calls == 1
    assert session.get_token() == "new-1"
    assert session.refresh_token == "refresh-2"
    assert server.seen_tokens.count("expired") == 5
    assert server.seen_tokens.count("new-1") == 5


def test_failed_refresh_clears_session() -> None:
    server = _RefreshingServer(refresh_ok=False)
    session = AuthSession("expired", "refresh-1")

    async def scenario() -> None:
        async with _client(session, server) as api:
            await api.request("GET", "/files")

    with pytest.raises(AuthenticationError) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value.status_code == 401
    assert server.refresh_calls == 1
    assert session.is_authenticated is False
    assert session.refresh_token is None


def test_missing_refresh_token_raises_without_calling_server() -> None:
    server = _RefreshingServer()
    session = AuthSession("expired")

    async def scenario() -> None:
        async with _client(session, server) as api:
            await api.request("GET", "/files")

    with pytest.raises(AuthenticationError):
        asyncio.run(scenario())
    assert server.refresh_calls == 0


def test_error_envelope_becomes_api_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/busy"):
            return _envelope(code=503, message="try later", status_code=503)
        if request.url.path.endswith("/soft"):
            return _envelope(code=1001, message="quota exceeded")
        return _envelope(code=404, message="folder not found", status_code=404)

    async def scenario() -> list[ApiError]:
        errors = []
        async with _client(AuthSession("t", "r"), handler) as api:
            for path in ("/missing", "/busy", "/soft"):
                try:
                    await api.request("GET", path)
                except ApiError as exc:
                    errors.append(exc)
        return errors

    missing, busy, soft = asyncio.run(scenario())

    assert (missing.message, missing.status_code, missing.transient) == ("folder not found", 404, False)
    assert (busy.status_code, busy.transient) == (503, True)
    assert (soft.code, soft.message, soft.transient) == (1001, "quota exceeded", False)


def test_transport_error_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario() -> None:
        async with _client(AuthSession("t", "r"), handler) as api:
            await api.request("GET", "/files")

    with pytest.raises(ApiError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.status_code is None
    assert excinfo.value.transient is True


def test_login_stores_tokens() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert "Authorization" not in request.headers
        assert json.loads(request.content) == {"username": "admin", "password": "admin"}
        return _envelope({"accessToken": "a-1", "refreshToken": "r-1", "tokenType": "bearer", "expiresIn": 900})

    session = AuthSession()

    async def scenario() -> None:
        async with _client(session, handler) as api:
            await api.login("admin", "admin")

    asyncio.run(scenario())
    assert session.get_token() == "a-1"
    assert session.refresh_token == "r-1"
