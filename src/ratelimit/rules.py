"""Endpoint classification and rate-limit key derivation.

Rules are evaluated top to bottom and the first match wins, so the order of
``RULES`` is the priority order: AI-cost endpoints, then auth, then uploads,
then the catch-all default.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from src.models import EndpointClass, Principal, PrincipalKind, RateLimitConfig

API_PREFIX = "/api/"

ONE_MINUTE_MS = 60_000

RATE_LIMIT_DEFAULT_AUTH = RateLimitConfig(window_ms=ONE_MINUTE_MS, max_requests=60)
RATE_LIMIT_DEFAULT_UNAUTH = RateLimitConfig(window_ms=ONE_MINUTE_MS, max_requests=20)
RATE_LIMIT_STRICT = RateLimitConfig(window_ms=ONE_MINUTE_MS, max_requests=5)
RATE_LIMIT_UPLOAD = RateLimitConfig(window_ms=ONE_MINUTE_MS, max_requests=10)
RATE_LIMIT_AUTH_ENDPOINT = RateLimitConfig(window_ms=ONE_MINUTE_MS, max_requests=5)

_AI_PATTERNS = [
    re.compile(r"/api/v1/drafts/[^/]+/ai/"),
    re.compile(r"/api/v1/submissions/[^/]+/evaluate"),
    re.compile(r"/api/v1/submissions/[^/]+/rewrite"),
]
_UPLOAD_PATTERN = re.compile(r"/api/v1/submissions/[^/]+/finalize")

Predicate = Callable[[str, str], bool]


def _is_ai(path: str, method: str) -> bool:
    return path.startswith("/api/v1/tts") or any(p.search(path) for p in _AI_PATTERNS)


def _is_auth(path: str, method: str) -> bool:
    return path.startswith("/api/v1/auth/")


def _is_upload(path: str, method: str) -> bool:
    return _UPLOAD_PATTERN.search(path) is not None


def _always(path: str, method: str) -> bool:
    return True


@dataclass(frozen=True)
class EndpointRule:
    endpoint_class: EndpointClass
    matches: Predicate
    config: RateLimitConfig
    # Used instead of ``config`` for callers without a resolved principal
    anonymous_config: RateLimitConfig | None = None

    def config_for(self, authenticated: bool) -> RateLimitConfig:
        if not authenticated and self.anonymous_config is not None:
            return self.anonymous_config
        return self.config


RULES: tuple[EndpointRule, ...] = (
    EndpointRule(EndpointClass.AI, _is_ai, RATE_LIMIT_STRICT),
    EndpointRule(EndpointClass.AUTH, _is_auth, RATE_LIMIT_AUTH_ENDPOINT),
    EndpointRule(EndpointClass.UPLOAD, _is_upload, RATE_LIMIT_UPLOAD),
    EndpointRule(
        EndpointClass.DEFAULT, _always, RATE_LIMIT_DEFAULT_AUTH, RATE_LIMIT_DEFAULT_UNAUTH,
    ),
)


@dataclass(frozen=True)
class Classification:
    key: str
    config: RateLimitConfig
    endpoint_class: EndpointClass


def match_rule(
    path: str, method: str = "GET", rules: tuple[EndpointRule, ...] = RULES,
) -> EndpointRule | None:
    """Return the first rule matching an API path, or None for non-API paths."""
    if not path.startswith(API_PREFIX):
        return None
    method = method.upper()
    for rule in rules:
        if rule.matches(path, method):
            return rule
    return None


def client_ip(headers: Mapping[str, str]) -> str:
    """First hop of ``x-forwarded-for``, then ``x-real-ip``, then ``unknown``."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return "unknown"


def rate_limit_key(
    endpoint_class: EndpointClass,
    principal: Principal | None,
    headers: Mapping[str, str],
) -> str:
    if principal is not None:
        return f"{endpoint_class.value}:{PrincipalKind.USER.value}:{principal.user_id}"
    return f"{endpoint_class.value}:{PrincipalKind.IP.value}:{client_ip(headers)}"


def classify(
    path: str,
    method: str,
    principal: Principal | None,
    headers: Mapping[str, str],
    rules: tuple[EndpointRule, ...] = RULES,
) -> Classification | None:
    """Derive the rate-limit key and config for a request.

    Returns None when the path is outside the rate-limited API surface.
    """
    rule = match_rule(path, method, rules)
    if rule is None:
        return None
    return Classification(
        key=rate_limit_key(rule.endpoint_class, principal, headers),
        config=rule.config_for(principal is not None),
        endpoint_class=rule.endpoint_class,
    )
