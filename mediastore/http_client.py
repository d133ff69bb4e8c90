import asyncio
import logging

import httpx

from mediastore.config import settings
from mediastore.errors import ApiError, AuthenticationError
from mediastore.logs import log_event, upload_logger
from mediastore.session import AuthSession

REFRESH_PATH = "/auth/refresh"


class ApiClient:
    """Envelope-aware HTTP client for the storage service.

    A 401 triggers one token refresh and one replay of the original request.
    Concurrent 401s share a single refresh: a request that waited for the
    refresh lock and finds a newer token than the one it sent just replays.
    """

    def __init__(
        self,
        session: AuthSession,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.session = session
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.api_base_url,
            timeout=timeout if timeout is not None else settings.http_timeout_seconds,
            transport=transport,
        )
        self._refresh_lock = asyncio.Lock()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def login(self, username: str, password: str) -> None:
        envelope = await self.request("POST", "/auth/login", json={"username": username, "password": password}, auth=False)
        data = envelope["data"]
        self.session.set_tokens(data["accessToken"], data["refreshToken"])

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
        data: dict | None = None,
        files: list | dict | None = None,
        auth: bool = True,
    ) -> dict:
        token = self.session.get_token() if auth else None
        response = await self._send(method, path, token, params=params, json=json, data=data, files=files)
        if response.status_code == 401 and auth and path != REFRESH_PATH:
            await self._refresh(token)
            response = await self._send(
                method, path, self.session.get_token(), params=params, json=json, data=data, files=files
            )
        return self._decode(response)

    async def _send(self, method: str, path: str, token: str | None, **kwargs) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            return await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TransportError as exc:
            raise ApiError(f"{method} {path} failed: {exc}") from exc

    async def _refresh(self, sent_token: str | None) -> None:
        async with self._refresh_lock:
            current = self.session.get_token()
            if current and current != sent_token:
                return
            refresh_token = self.session.refresh_token
            if not refresh_token:
                self.session.clear()
                raise AuthenticationError("session expired, please log in again", status_code=401)
            try:
                response = await self._send("POST", REFRESH_PATH, None, json={"refreshToken": refresh_token})
                envelope = self._decode(response)
            except ApiError as exc:
                self.session.clear()
                log_event(upload_logger, {"event": "token_refresh_failed", "detail": exc.message}, logging.WARNING)
                raise AuthenticationError(
                    f"token refresh failed: {exc.message}", status_code=exc.status_code or 401, code=exc.code
                ) from exc
            tokens = envelope["data"]
            self.session.set_tokens(tokens["accessToken"], tokens.get("refreshToken"))
            log_event(upload_logger, {"event": "token_refreshed"})

    @staticmethod
    def _decode(response: httpx.Response) -> dict:
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400:
            message = body.get("message") or body.get("detail") or f"HTTP {response.status_code}"
            error_class = AuthenticationError if response.status_code == 401 else ApiError
            raise error_class(str(message), status_code=response.status_code, code=body.get("code"))
        if "code" not in body:
            raise ApiError("malformed response envelope", status_code=response.status_code)
        if body["code"] != 0:
            raise ApiError(body.get("message") or "request failed", status_code=response.status_code, code=body["code"])
        return body
