"""Fixed security response headers stamped on every response."""

from __future__ import annotations

from starlette.datastructures import MutableHeaders

CONTENT_SECURITY_POLICY = "; ".join([
    "default-src 'self'",
    "script-src 'self' 'unsafe-eval' 'unsafe-inline'",
    "style-src 'self' 'unsafe-inline'",
    "img-src 'self' blob: data: https:",
    "font-src 'self'",
    "connect-src 'self' https://*.supabase.co https://api.openai.com https://api.stripe.com",
])

SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
    "Content-Security-Policy": CONTENT_SECURITY_POLICY,
}

HSTS_VALUE = "max-age=31536000; includeSubDomains"


def security_headers(production: bool) -> dict[str, str]:
    headers = dict(SECURITY_HEADERS)
    if production:
        headers["Strict-Transport-Security"] = HSTS_VALUE
    return headers


def apply_security_headers(headers: MutableHeaders, production: bool) -> None:
    """Set (overwriting) the security headers on a response header block."""
    for name, value in security_headers(production).items():
        headers[name] = value
