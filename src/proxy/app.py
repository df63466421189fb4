"""FastAPI admission gateway in front of the essay-marking application server."""

from __future__ import annotations

import logging

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from src.audit.logger import AuditLogger
from src.config import GatewaySettings
from src.csrf.guard import CsrfGuard
from src.identity.provider import HttpIdentityProvider, IdentityProvider, NullIdentityProvider
from src.proxy.admission import AdmissionGate, AdmissionMiddleware
from src.ratelimit.limiter import RateLimiter

logger = logging.getLogger(__name__)

_HOP_BY_HOP = frozenset({
    "content-length", "transfer-encoding", "connection", "keep-alive", "content-encoding",
})


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    settings = GatewaySettings.from_env()
    if not settings.upstream_url:
        raise RuntimeError("UPSTREAM_URL must be set")
    return create_app(settings.upstream_url, build_gate(settings))


def build_gate(settings: GatewaySettings) -> AdmissionGate:
    """Wire the admission components from settings."""
    identity: IdentityProvider
    if settings.identity_url:
        identity = HttpIdentityProvider(
            settings.identity_url,
            api_key=settings.identity_api_key,
            timeout=settings.identity_timeout_seconds,
            secure_cookies=settings.production,
        )
    else:
        logger.warning("IDENTITY_URL not set; all callers are rate limited by address")
        identity = NullIdentityProvider()

    audit_logger = (
        AuditLogger.from_env(settings.audit_log_path) if settings.audit_log_path else None
    )
    return AdmissionGate(
        limiter=RateLimiter(sweep_interval_ms=settings.sweep_interval_seconds * 1000),
        csrf_guard=CsrfGuard(secure_cookies=settings.production),
        identity_provider=identity,
        production=settings.production,
        audit_logger=audit_logger,
    )


def create_app(
    upstream_url: str,
    gate: AdmissionGate,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create the gateway app: admission middleware plus a forwarding route."""
    app = FastAPI(docs_url=None, redoc_url=None)
    app.state.gate = gate

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.api_route(
        "/{path:path}", methods=["GET", "HEAD", "OPTIONS", "POST", "PUT", "DELETE", "PATCH"],
    )
    async def forward(request: Request, path: str) -> Response:
        url = f"{upstream_url.rstrip('/')}/{path}"
        if request.url.query:
            url = f"{url}?{request.url.query}"
        headers = dict(request.headers)
        headers.pop("host", None)
        headers.pop("content-length", None)

        body = await request.body()
        try:
            async with httpx.AsyncClient(transport=transport) as client:
                resp = await client.request(
                    method=request.method,
                    url=url,
                    headers=headers,
                    content=body,
                    timeout=30.0,
                )
        except (httpx.ConnectError, httpx.TimeoutException):
            return JSONResponse({"error": "Upstream unavailable"}, status_code=502)

        response = Response(content=resp.content, status_code=resp.status_code)
        for name, value in resp.headers.multi_items():
            if name.lower() not in _HOP_BY_HOP:
                response.headers.append(name, value)
        return response

    app.add_middleware(AdmissionMiddleware, gate=gate)

    return app
