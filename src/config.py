"""Gateway settings, read once from the environment at startup."""

from __future__ import annotations

import os

from pydantic import BaseModel, ConfigDict, Field


class GatewaySettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    production: bool = False
    upstream_url: str | None = None
    identity_url: str | None = None
    identity_api_key: str = ""
    identity_timeout_seconds: float = Field(default=5.0, gt=0)
    sweep_interval_seconds: int = Field(default=60, ge=0)
    audit_log_path: str | None = None

    @classmethod
    def from_env(cls) -> GatewaySettings:
        env = os.environ.get("APP_ENV") or os.environ.get("NODE_ENV") or "development"
        return cls(
            production=env.strip().lower() == "production",
            upstream_url=os.environ.get("UPSTREAM_URL") or None,
            identity_url=os.environ.get("IDENTITY_URL") or None,
            identity_api_key=os.environ.get("IDENTITY_API_KEY", ""),
            identity_timeout_seconds=float(os.environ.get("IDENTITY_TIMEOUT_SECONDS", "5.0")),
            sweep_interval_seconds=int(
                os.environ.get("RATE_LIMIT_SWEEP_INTERVAL_SECONDS", "60"),
            ),
            audit_log_path=os.environ.get("AUDIT_LOG_PATH") or None,
        )
