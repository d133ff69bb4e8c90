import secrets
import time
from dataclasses import dataclass

import jwt
from fastapi import Depends, Header, HTTPException
from jwt import InvalidTokenError

from mediastore.config import settings

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass(frozen=True)
class AuthUser:
    user_id: str
    is_admin: bool = False


def _parse_credentials() -> dict[str, str]:
    mapping: dict[str, str] = {}
    raw = settings.user_credentials.strip()
    if not raw:
        return mapping

    for item in raw.split(","):
        pair = item.strip()
        if ":" not in pair:
            continue
        user_id, password = pair.split(":", 1)
        user_id = user_id.strip()
        if user_id and password:
            mapping[user_id] = password
    return mapping


def _admin_ids() -> set[str]:
    return {item.strip() for item in settings.admin_user_ids.split(",") if item.strip()}


def authenticate(username: str, password: str) -> str:
    expected = _parse_credentials().get(username)
    if expected is None or not secrets.compare_digest(expected.encode("utf-8"), password.encode("utf-8")):
        raise HTTPException(status_code=401, detail="invalid username or password")
    return username


def issue_token(user_id: str, token_type: str) -> str:
    if not settings.jwt_secret:
        raise HTTPException(status_code=500, detail="jwt_secret is not configured")
    ttl = settings.access_token_ttl_seconds if token_type == ACCESS_TOKEN_TYPE else settings.refresh_token_ttl_seconds
    now = int(time.time())
    payload = {
        "sub": user_id,
        "type": token_type,
        "iat": now,
        "exp": now + ttl,
        # Two tokens minted in the same second for the same user must still differ.
        "jti": secrets.token_hex(8),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def issue_token_pair(user_id: str) -> dict:
    return {
        "access_token": issue_token(user_id, ACCESS_TOKEN_TYPE),
        "refresh_token": issue_token(user_id, REFRESH_TOKEN_TYPE),
        "expires_in": settings.access_token_ttl_seconds,
    }


def decode_token(token: str, expected_type: str) -> str:
    if not settings.jwt_secret:
        raise HTTPException(status_code=500, detail="jwt_secret is not configured")
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail=f"invalid token: {exc}") from exc
    if payload.get("type") != expected_type:
        raise HTTPException(status_code=401, detail=f"expected a {expected_type} token")
    user_id = str(payload.get("sub") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="token missing subject claim")
    return user_id


def _parse_bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="missing bearer token")
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise HTTPException(status_code=401, detail="invalid authorization header")
    token = authorization[len(prefix) :].strip()
    if not token:
        raise HTTPException(status_code=401, detail="missing bearer token")
    return token


def require_user(authorization: str | None = Header(default=None, alias="Authorization")) -> AuthUser:
    user_id = decode_token(_parse_bearer_token(authorization), ACCESS_TOKEN_TYPE)
    return AuthUser(user_id=user_id, is_admin=user_id in _admin_ids())


def require_admin(user: AuthUser = Depends(require_user)) -> AuthUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="admin access required")
    return user
