"""Double-submit-cookie CSRF protection.

Safe requests receive a ``csrf-token`` cookie when they lack one. Mutating
requests to the JSON API must echo that cookie in the ``x-csrf-token``
header. Webhooks and identity callbacks carry their own verification and are
skipped.
"""

from __future__ import annotations

import hmac
import secrets
from collections.abc import Mapping

from starlette.requests import Request
from starlette.responses import Response

from src.models import CsrfDecision

CSRF_COOKIE = "csrf-token"
CSRF_HEADER = "x-csrf-token"
TOKEN_BYTES = 32

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

# Path prefixes that bypass CSRF validation
SKIP_PREFIXES = (
    "/api/v1/webhooks/stripe",
    "/auth/callback",
    "/api/auth/callback",
    "/api/v1/auth/logout",
)

API_PREFIX = "/api/"


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def csrf_headers(cookies: Mapping[str, str]) -> dict[str, str]:
    """Header dict echoing the CSRF cookie, for Python API clients."""
    token = cookies.get(CSRF_COOKIE)
    return {CSRF_HEADER: token} if token else {}


class CsrfGuard:
    """Validates the double-submit CSRF token pair."""

    def __init__(self, secure_cookies: bool = False) -> None:
        self._secure = secure_cookies

    @staticmethod
    def should_skip(path: str) -> bool:
        return path.startswith(SKIP_PREFIXES)

    def check(self, request: Request, response: Response) -> CsrfDecision:
        path = request.url.path
        if self.should_skip(path):
            return CsrfDecision.proceed()

        method = request.method.upper()
        cookie_token = request.cookies.get(CSRF_COOKIE)

        if method in SAFE_METHODS:
            if not cookie_token:
                self.issue(response)
            return CsrfDecision.proceed()

        # Plain page form posts are outside the JSON API surface
        if not path.startswith(API_PREFIX):
            return CsrfDecision.proceed()

        header_token = request.headers.get(CSRF_HEADER)
        if not cookie_token or not header_token:
            return CsrfDecision.reject()
        if not hmac.compare_digest(cookie_token.encode(), header_token.encode()):
            return CsrfDecision.reject()
        return CsrfDecision.proceed()

    def issue(self, response: Response) -> str:
        """Attach a fresh token cookie to ``response`` and return the token."""
        token = generate_token()
        response.set_cookie(
            CSRF_COOKIE,
            token,
            path="/",
            secure=self._secure,
            httponly=False,
            samesite="strict",
        )
        return token
