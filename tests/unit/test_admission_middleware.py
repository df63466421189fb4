"""Tests for the admission gate and its ASGI middleware."""

from __future__ import annotations

from unittest.mock import MagicMock

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.routing import Route

from src.csrf.guard import CsrfGuard
from src.identity.provider import HttpIdentityProvider, IdentityProvider, read_session
from src.models import AuditEventType, EndpointClass, Principal, RateLimitConfig
from src.proxy.admission import AdmissionGate, AdmissionMiddleware
from src.ratelimit.limiter import RateLimiter
from src.ratelimit.rules import RULES, EndpointRule
from tests.conftest import CSRF_TOKEN, FakeClock, StubIdentityProvider

CSRF = {"cookie": f"csrf-token={CSRF_TOKEN}", "x-csrf-token": CSRF_TOKEN}
AI_PATH = "/api/v1/submissions/s1/evaluate"


def _create_app(
    principal: Principal | None = None,
    production: bool = False,
    audit_logger: MagicMock | None = None,
    rules: tuple[EndpointRule, ...] | None = None,
    identity_provider: IdentityProvider | None = None,
) -> tuple[AdmissionMiddleware, list[str]]:
    handled: list[str] = []

    async def ok(request: Request) -> PlainTextResponse:
        handled.append(f"{request.method} {request.url.path}")
        return PlainTextResponse("OK")

    async def with_cookie(request: Request) -> PlainTextResponse:
        response = PlainTextResponse("OK")
        response.set_cookie("theme", "dark")
        return response

    app = Starlette(routes=[
        Route("/", ok),
        Route("/contact", ok, methods=["POST"]),
        Route("/assignments", ok),
        Route("/login", ok),
        Route("/session", with_cookie),
        Route("/api/v1/assignments", ok, methods=["GET", "POST"]),
        Route(AI_PATH, ok, methods=["POST"]),
        Route("/api/v1/webhooks/stripe", ok, methods=["POST"]),
    ])
    gate = AdmissionGate(
        limiter=RateLimiter(clock=FakeClock()),
        csrf_guard=CsrfGuard(secure_cookies=production),
        identity_provider=identity_provider or StubIdentityProvider(principal),
        production=production,
        audit_logger=audit_logger,
        rules=rules if rules is not None else RULES,
    )
    return AdmissionMiddleware(app, gate=gate), handled


def _client(app: AdmissionMiddleware) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_safe_request_gets_headers_and_csrf_cookie() -> None:
    app, handled = _create_app()
    async with _client(app) as client:
        resp = await client.get("/")
    assert resp.status_code == 200
    assert resp.text == "OK"
    assert resp.headers["x-frame-options"] == "DENY"
    assert "strict-transport-security" not in resp.headers
    cookies = resp.headers.get_list("set-cookie")
    assert len(cookies) == 1
    assert cookies[0].startswith("csrf-token=")
    assert handled == ["GET /"]


@pytest.mark.asyncio
async def test_production_adds_hsts_and_secure_cookie() -> None:
    app, _ = _create_app(production=True)
    async with _client(app) as client:
        resp = await client.get("/")
    assert resp.headers["strict-transport-security"] == "max-age=31536000; includeSubDomains"
    assert "secure" in resp.headers["set-cookie"].lower()


@pytest.mark.asyncio
async def test_application_cookies_survive_alongside_csrf_cookie() -> None:
    app, _ = _create_app()
    async with _client(app) as client:
        resp = await client.get("/session")
    names = sorted(c.split("=")[0] for c in resp.headers.get_list("set-cookie"))
    assert names == ["csrf-token", "theme"]


@pytest.mark.asyncio
async def test_ai_endpoint_rate_limited_after_five() -> None:
    app, handled = _create_app()
    async with _client(app) as client:
        for _ in range(5):
            resp = await client.post(AI_PATH, headers=CSRF)
            assert resp.status_code == 200
        resp = await client.post(AI_PATH, headers=CSRF)
    assert resp.status_code == 429
    assert resp.json() == {"error": "Too Many Requests"}
    assert int(resp.headers["retry-after"]) >= 1
    assert resp.headers["x-content-type-options"] == "nosniff"
    assert len(handled) == 5


@pytest.mark.asyncio
async def test_rate_limit_runs_before_csrf() -> None:
    app, _ = _create_app()
    async with _client(app) as client:
        for _ in range(5):
            await client.post(AI_PATH, headers=CSRF)
        resp = await client.post(AI_PATH)
    assert resp.status_code == 429


@pytest.mark.asyncio
async def test_anonymous_callers_limited_per_address() -> None:
    app, _ = _create_app()
    async with _client(app) as client:
        for _ in range(20):
            resp = await client.get(
                "/api/v1/assignments", headers={"x-forwarded-for": "1.1.1.1"},
            )
            assert resp.status_code == 200
        blocked = await client.get(
            "/api/v1/assignments", headers={"x-forwarded-for": "1.1.1.1"},
        )
        other = await client.get(
            "/api/v1/assignments", headers={"x-forwarded-for": "2.2.2.2"},
        )
    assert blocked.status_code == 429
    assert other.status_code == 200


@pytest.mark.asyncio
async def test_signed_in_callers_get_looser_default_limit() -> None:
    app, _ = _create_app(principal=Principal(user_id="u1"))
    async with _client(app) as client:
        statuses = [
            (await client.get("/api/v1/assignments")).status_code for _ in range(61)
        ]
    assert statuses[:60] == [200] * 60
    assert statuses[60] == 429


@pytest.mark.asyncio
async def test_pages_are_not_rate_limited() -> None:
    app, _ = _create_app()
    async with _client(app) as client:
        statuses = {(await client.get("/")).status_code for _ in range(30)}
    assert statuses == {200}


@pytest.mark.asyncio
async def test_csrf_rejection_blocks_handler() -> None:
    app, handled = _create_app()
    async with _client(app) as client:
        resp = await client.post("/api/v1/assignments")
    assert resp.status_code == 403
    assert resp.json() == {"error": "CSRF token missing or invalid"}
    assert resp.headers["x-frame-options"] == "DENY"
    assert handled == []


@pytest.mark.asyncio
async def test_matching_csrf_tokens_reach_handler() -> None:
    app, handled = _create_app()
    async with _client(app) as client:
        resp = await client.post("/api/v1/assignments", headers=CSRF)
    assert resp.status_code == 200
    assert handled == ["POST /api/v1/assignments"]


@pytest.mark.asyncio
async def test_webhook_and_page_posts_skip_csrf() -> None:
    app, _ = _create_app()
    async with _client(app) as client:
        webhook = await client.post("/api/v1/webhooks/stripe")
        page = await client.post("/contact")
    assert webhook.status_code == 200
    assert page.status_code == 200


@pytest.mark.asyncio
async def test_anonymous_dashboard_redirects_to_login() -> None:
    app, handled = _create_app()
    async with _client(app) as client:
        resp = await client.get("/assignments")
    assert resp.status_code == 307
    assert resp.headers["location"] == "/login?redirect=%2Fassignments"
    assert resp.headers["x-frame-options"] == "DENY"
    assert resp.headers["set-cookie"].startswith("csrf-token=")
    assert handled == []


@pytest.mark.asyncio
async def test_signed_in_login_page_redirects_home() -> None:
    app, _ = _create_app(principal=Principal(user_id="u1"))
    async with _client(app) as client:
        resp = await client.get("/login")
    assert resp.status_code == 307
    assert resp.headers["location"] == "/assignments"


@pytest.mark.asyncio
async def test_expired_session_is_refreshed_instead_of_redirected() -> None:
    def identity(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/auth/v1/user":
            return httpx.Response(401, json={"msg": "JWT expired"})
        return httpx.Response(200, json={
            "access_token": "fresh-access",
            "refresh_token": "fresh-refresh",
            "user": {"id": "user-42"},
        })

    provider = HttpIdentityProvider(
        "https://auth.example.com", transport=httpx.MockTransport(identity),
    )
    app, handled = _create_app(identity_provider=provider)
    session = '{"access_token":"expired","refresh_token":"valid-refresh"}'
    async with _client(app) as client:
        resp = await client.get("/assignments", headers={"cookie": f"sb-ref-auth-token={session}"})

    assert resp.status_code == 200
    assert handled == ["GET /assignments"]
    cookies = dict(c.split(";")[0].split("=", 1) for c in resp.headers.get_list("set-cookie"))
    assert sorted(cookies) == ["csrf-token", "sb-ref-auth-token"]
    refreshed = read_session({"sb-ref-auth-token": cookies["sb-ref-auth-token"]})
    assert refreshed is not None
    assert refreshed.access_token == "fresh-access"


@pytest.mark.asyncio
async def test_misconfigured_class_fails_closed() -> None:
    broken = RateLimitConfig(window_ms=60_000, max_requests=0)
    rules = (EndpointRule(EndpointClass.DEFAULT, lambda path, method: True, broken),)
    app, handled = _create_app(rules=rules)
    async with _client(app) as client:
        api = await client.get("/api/v1/assignments")
        page = await client.get("/")
    assert api.status_code == 429
    assert page.status_code == 200
    assert handled == ["GET /"]


@pytest.mark.asyncio
async def test_rate_limit_rejection_audited() -> None:
    mock_logger = MagicMock()
    app, _ = _create_app(audit_logger=mock_logger)
    async with _client(app) as client:
        for _ in range(6):
            await client.post(AI_PATH, headers={**CSRF, "x-forwarded-for": "3.3.3.3"})

    events = [c[0][0] for c in mock_logger.log.call_args_list]
    limited = [e for e in events if e.event_type == AuditEventType.RATE_LIMITED]
    assert len(limited) == 1
    assert limited[0].endpoint_class == EndpointClass.AI
    assert limited[0].source_ip == "3.3.3.3"
    assert limited[0].details["key"] == "ai:ip:3.3.3.3"


@pytest.mark.asyncio
async def test_csrf_rejection_audited() -> None:
    mock_logger = MagicMock()
    app, _ = _create_app(audit_logger=mock_logger, principal=Principal(user_id="u9"))
    async with _client(app) as client:
        await client.post("/api/v1/assignments")

    (call,) = mock_logger.log.call_args_list
    event = call[0][0]
    assert event.event_type == AuditEventType.CSRF_REJECTED
    assert event.user_id == "u9"
