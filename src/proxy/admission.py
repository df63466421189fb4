"""Per-request admission gate and its ASGI middleware.

Order per request, stopping at the first rejection:

1. Resolve the session principal and work out page redirects
2. Stamp security headers
3. Rate limit (API paths only) -> 429 with Retry-After
4. CSRF double-submit check -> 403
5. Hand over to the application

Every layer writes headers and cookies onto one pending response. Whichever
response finally goes out (rejection, redirect or the application's own)
carries them.
"""

from __future__ import annotations

import logging

from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from src.audit.logger import AuditLogger
from src.csrf.guard import CsrfGuard
from src.identity.provider import IdentityProvider, NullIdentityProvider
from src.identity.redirects import auth_redirect
from src.models import AuditEvent, AuditEventType, Principal, RiskLevel
from src.proxy.security_headers import apply_security_headers
from src.ratelimit.limiter import RateLimiter
from src.ratelimit.rules import RULES, Classification, EndpointRule, classify, client_ip

logger = logging.getLogger(__name__)

# Headers of the placeholder response that describe its (empty) body
_BODY_HEADERS = frozenset({b"content-length", b"content-type"})


def merge_pending_headers(target: MutableHeaders, pending: Response) -> None:
    """Copy pending headers onto ``target``; cookies are appended, the rest overwrite."""
    for raw_name, raw_value in pending.raw_headers:
        if raw_name in _BODY_HEADERS:
            continue
        name = raw_name.decode("latin-1")
        value = raw_value.decode("latin-1")
        if raw_name == b"set-cookie":
            target.append(name, value)
        else:
            target[name] = value


class AdmissionGate:
    """Sequences session resolution, security headers, rate limiting and CSRF."""

    def __init__(
        self,
        limiter: RateLimiter,
        csrf_guard: CsrfGuard,
        identity_provider: IdentityProvider | None = None,
        production: bool = False,
        audit_logger: AuditLogger | None = None,
        rules: tuple[EndpointRule, ...] = RULES,
    ) -> None:
        self.limiter = limiter
        self.csrf_guard = csrf_guard
        self.identity_provider = identity_provider or NullIdentityProvider()
        self.production = production
        self.audit_logger = audit_logger
        self._rules = rules

    async def admit(self, request: Request, pending: Response) -> Response | None:
        """Return the response that ends the request here, or None to continue."""
        path = request.url.path
        principal = await self.identity_provider.get_principal(request, pending)
        redirect_to = auth_redirect(path, principal)

        apply_security_headers(pending.headers, self.production)

        classification = classify(path, request.method, principal, request.headers, self._rules)
        if classification is not None:
            decision = self.limiter.check(classification.key, classification.config)
            if not decision.allowed:
                retry_after = decision.retry_after_seconds or 1
                logger.debug("Rate limited %s (retry in %ds)", classification.key, retry_after)
                self._log_rate_limited(request, principal, classification, retry_after)
                rejection = JSONResponse(
                    {"error": "Too Many Requests"},
                    status_code=429,
                    headers={"Retry-After": str(retry_after)},
                )
                return self._finish(rejection, pending)

        csrf = self.csrf_guard.check(request, pending)
        if not csrf.allowed:
            logger.debug("CSRF check failed for %s %s", request.method, path)
            self._log(request, principal, AuditEventType.CSRF_REJECTED, "rejected", RiskLevel.LOW)
            rejection = JSONResponse({"error": csrf.error}, status_code=csrf.status_code)
            return self._finish(rejection, pending)

        if redirect_to is not None:
            self._log(
                request, principal, AuditEventType.AUTH_REDIRECT, "redirected", RiskLevel.INFO,
                details={"location": redirect_to},
            )
            return self._finish(RedirectResponse(redirect_to, status_code=307), pending)

        return None

    @staticmethod
    def _finish(response: Response, pending: Response) -> Response:
        merge_pending_headers(response.headers, pending)
        return response

    def _log_rate_limited(
        self,
        request: Request,
        principal: Principal | None,
        classification: Classification,
        retry_after: int,
    ) -> None:
        self._log(
            request, principal, AuditEventType.RATE_LIMITED, "rejected", RiskLevel.LOW,
            classification=classification,
            details={
                "key": classification.key,
                "max_requests": classification.config.max_requests,
                "window_ms": classification.config.window_ms,
                "retry_after": retry_after,
            },
        )

    def _log(
        self,
        request: Request,
        principal: Principal | None,
        event_type: AuditEventType,
        result: str,
        risk_level: RiskLevel,
        classification: Classification | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        if not self.audit_logger:
            return
        self.audit_logger.log(AuditEvent(
            event_type=event_type,
            source_ip=client_ip(request.headers),
            user_id=principal.user_id if principal else None,
            action=f"{request.method} {request.url.path}",
            result=result,
            risk_level=risk_level,
            endpoint_class=classification.endpoint_class if classification else None,
            details=details,
        ))


class AdmissionMiddleware:
    """ASGI middleware running the admission gate in front of an application."""

    def __init__(self, app: ASGIApp, gate: AdmissionGate) -> None:
        self.app = app
        self.gate = gate

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        pending = Response()
        response = await self.gate.admit(request, pending)
        if response is not None:
            await response(scope, receive, send)
            return

        async def send_with_pending(message: Message) -> None:
            if message["type"] == "http.response.start":
                merge_pending_headers(MutableHeaders(scope=message), pending)
            await send(message)

        await self.app(scope, receive, send_with_pending)
