"""Shared data models for the admission gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

# --- Enums ---


class EndpointClass(str, Enum):
    AI = "ai"
    AUTH = "auth"
    UPLOAD = "upload"
    DEFAULT = "default"


class PrincipalKind(str, Enum):
    USER = "user"
    IP = "ip"


class AuditEventType(str, Enum):
    RATE_LIMITED = "rate_limited"
    CSRF_REJECTED = "csrf_rejected"
    AUTH_REDIRECT = "auth_redirect"


class RiskLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


# --- Rate limiting ---


@dataclass(frozen=True)
class RateLimitConfig:
    """Admission threshold for one endpoint class.

    Deliberately unvalidated: a non-positive value is a configuration fault
    that the limiter turns into a rejection instead of an exception.
    """

    window_ms: int
    max_requests: int


@dataclass
class RateLimitEntry:
    """Timestamps (monotonic ms) of admitted requests for one key, oldest first."""

    timestamps: list[float] = field(default_factory=list)
    window_ms: int = 0


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int | None = None

    @classmethod
    def allow(cls) -> RateLimitDecision:
        return cls(allowed=True)

    @classmethod
    def reject(cls, retry_after_seconds: int) -> RateLimitDecision:
        return cls(allowed=False, retry_after_seconds=max(1, retry_after_seconds))


# --- Identity ---


class Principal(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1)
    email: str | None = None


# --- CSRF ---


@dataclass(frozen=True)
class CsrfDecision:
    allowed: bool
    status_code: int = 200
    error: str | None = None

    @classmethod
    def proceed(cls) -> CsrfDecision:
        return cls(allowed=True)

    @classmethod
    def reject(cls) -> CsrfDecision:
        return cls(allowed=False, status_code=403, error="CSRF token missing or invalid")


# --- Audit Models ---


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    event_type: AuditEventType
    source_ip: str | None = None
    user_id: str | None = None
    action: str
    result: str  # "allowed" | "rejected" | "redirected"
    risk_level: RiskLevel
    endpoint_class: EndpointClass | None = None
    details: dict[str, object] | None = None
