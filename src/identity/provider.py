"""Session principal resolution against the hosted identity service.

The gateway never verifies tokens itself. It forwards the caller's access
token to the identity service and trusts the user it returns. An expired
access token is exchanged for a new session using the cookie's refresh token,
and the new session cookie is written onto the pending response. Any other
failure means the caller is treated as anonymous and keyed by network address.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import Response

from src.models import Principal

logger = logging.getLogger(__name__)

# sb-<project-ref>-auth-token, optionally split into .0, .1, ... chunks
_SESSION_COOKIE = re.compile(r"^(sb-[^.]+-auth-token)(?:\.(\d+))?$")
_BASE64_PREFIX = "base64-"
# Largest value written to a single cookie before splitting into chunks
SESSION_CHUNK_SIZE = 3180
SESSION_MAX_AGE = 400 * 24 * 60 * 60


class IdentityProvider(Protocol):
    async def get_principal(self, request: Request, response: Response) -> Principal | None: ...


class NullIdentityProvider:
    """Treats every caller as anonymous."""

    async def get_principal(self, request: Request, response: Response) -> Principal | None:
        return None


@dataclass(frozen=True)
class SessionCookie:
    """A decoded session cookie and the cookie names it was read from."""

    name: str
    cookie_names: tuple[str, ...]
    data: dict[str, Any]

    def _token(self, key: str) -> str | None:
        value = self.data.get(key)
        return value if isinstance(value, str) and value else None

    @property
    def access_token(self) -> str | None:
        return self._token("access_token")

    @property
    def refresh_token(self) -> str | None:
        return self._token("refresh_token")


def _decode_session(raw: str) -> dict[str, Any] | None:
    if raw.startswith(_BASE64_PREFIX):
        encoded = raw[len(_BASE64_PREFIX):]
        try:
            raw = base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4)).decode()
        except (binascii.Error, UnicodeDecodeError):
            return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def encode_session(data: dict[str, Any]) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return _BASE64_PREFIX + base64.urlsafe_b64encode(raw).decode().rstrip("=")


def read_session(cookies: dict[str, str]) -> SessionCookie | None:
    """Decode the session cookie, joining chunks when it was split."""
    name: str | None = None
    whole: str | None = None
    chunks: dict[int, str] = {}
    names: list[str] = []
    for cookie_name, value in cookies.items():
        match = _SESSION_COOKIE.match(cookie_name)
        if not match or not value:
            continue
        if name is not None and match.group(1) != name:
            continue
        name = match.group(1)
        names.append(cookie_name)
        if match.group(2) is None:
            whole = value
        else:
            chunks[int(match.group(2))] = value

    if name is None:
        return None
    raw = whole if whole is not None else "".join(chunks[i] for i in sorted(chunks))
    data = _decode_session(raw)
    if data is None:
        return None
    return SessionCookie(name=name, cookie_names=tuple(names), data=data)


def write_session(
    response: Response,
    session: SessionCookie,
    data: dict[str, Any],
    secure: bool = False,
) -> None:
    """Replace ``session`` with ``data`` on the response, chunking large values."""
    value = encode_session(data)
    if len(value) <= SESSION_CHUNK_SIZE:
        written = {session.name: value}
    else:
        written = {
            f"{session.name}.{i}": value[start:start + SESSION_CHUNK_SIZE]
            for i, start in enumerate(range(0, len(value), SESSION_CHUNK_SIZE))
        }

    for name, chunk in written.items():
        response.set_cookie(
            name,
            chunk,
            max_age=SESSION_MAX_AGE,
            path="/",
            secure=secure,
            httponly=False,
            samesite="lax",
        )
    for stale in session.cookie_names:
        if stale not in written:
            response.delete_cookie(stale, path="/")


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer ") and len(auth_header) > 7:
        return auth_header[7:]
    return None


def extract_access_token(request: Request) -> str | None:
    """Access token from a Bearer header or the session cookie."""
    token = _bearer_token(request)
    if token is not None:
        return token
    session = read_session(dict(request.cookies))
    return session.access_token if session is not None else None


def _principal_from_user(user: Any) -> Principal:
    return Principal(user_id=user["id"], email=user.get("email"))


class HttpIdentityProvider:
    """Resolves the caller via ``GET {base_url}/auth/v1/user``.

    A 401 for a cookie session that still holds a refresh token triggers
    ``POST {base_url}/auth/v1/token?grant_type=refresh_token``. Bearer
    callers are never refreshed; they manage their own tokens.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
        secure_cookies: bool = False,
    ) -> None:
        base = base_url.rstrip("/")
        self._user_url = f"{base}/auth/v1/user"
        self._token_url = f"{base}/auth/v1/token"
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._secure_cookies = secure_cookies

    def _headers(self, token: str | None = None) -> dict[str, str]:
        headers: dict[str, str] = {}
        if token is not None:
            headers["authorization"] = f"Bearer {token}"
        if self._api_key:
            headers["apikey"] = self._api_key
        return headers

    async def get_principal(self, request: Request, response: Response) -> Principal | None:
        session: SessionCookie | None = None
        token = _bearer_token(request)
        if token is None:
            session = read_session(dict(request.cookies))
            token = session.access_token if session is not None else None
        if token is None:
            return None

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                resp = await client.get(self._user_url, headers=self._headers(token))
                if resp.status_code == 401 and session is not None and session.refresh_token:
                    return await self._refresh(client, session, response)
        except httpx.HTTPError as exc:
            logger.warning("Identity service unavailable, treating caller as anonymous: %s", exc)
            return None

        if resp.status_code != 200:
            return None
        try:
            return _principal_from_user(resp.json())
        except (ValueError, KeyError, TypeError, ValidationError):
            logger.warning("Malformed identity service response (status %d)", resp.status_code)
            return None

    async def _refresh(
        self,
        client: httpx.AsyncClient,
        session: SessionCookie,
        response: Response,
    ) -> Principal | None:
        resp = await client.post(
            self._token_url,
            params={"grant_type": "refresh_token"},
            json={"refresh_token": session.refresh_token},
            headers=self._headers(),
        )
        if resp.status_code != 200:
            logger.info("Session refresh rejected (status %d)", resp.status_code)
            return None
        try:
            body = resp.json()
            principal = _principal_from_user(body["user"])
            if not isinstance(body.get("access_token"), str) or not isinstance(
                body.get("refresh_token"), str,
            ):
                raise ValueError("refreshed session is missing tokens")
        except (ValueError, KeyError, TypeError, AttributeError, ValidationError):
            logger.warning("Malformed session refresh response")
            return None

        write_session(response, session, body, secure=self._secure_cookies)
        return principal
