"""Shared test fixtures for the admission gateway."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from starlette.requests import Request
from starlette.responses import Response

from src.audit.logger import AuditLogger
from src.models import AuditEvent, AuditEventType, Principal, RiskLevel


class FakeClock:
    """Manually advanced millisecond clock for the rate limiter."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class StubIdentityProvider:
    """Identity provider returning a fixed principal."""

    def __init__(self, principal: Principal | None = None) -> None:
        self.principal = principal

    async def get_principal(self, request: Request, response: Response) -> Principal | None:
        return self.principal


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


# --- Factory functions for test data ---

# 32 bytes hex encoded
CSRF_TOKEN = "ab" * 32


def make_request(
    method: str = "GET",
    path: str = "/",
    headers: dict[str, str] | None = None,
    cookies: dict[str, str] | None = None,
) -> Request:
    """Build a bare Starlette request without running an app."""
    raw_headers = [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in (headers or {}).items()
    ]
    if cookies:
        cookie_header = "; ".join(f"{k}={v}" for k, v in cookies.items())
        raw_headers.append((b"cookie", cookie_header.encode("latin-1")))
    scope = {
        "type": "http",
        "method": method,
        "scheme": "http",
        "server": ("test", 80),
        "path": path,
        "root_path": "",
        "query_string": b"",
        "headers": raw_headers,
    }
    return Request(scope)


def make_audit_event(**kwargs) -> AuditEvent:
    """Factory for AuditEvent with sensible defaults."""
    defaults: dict[str, object] = {
        "event_type": AuditEventType.RATE_LIMITED,
        "action": "POST /api/v1/assignments",
        "result": "rejected",
        "risk_level": RiskLevel.LOW,
    }
    defaults.update(kwargs)
    return AuditEvent(**defaults)  # type: ignore[arg-type]
