"""Configuration for the Service Registry.

Provides strongly-typed settings using Pydantic and a loader from environment
variables with defaults suitable for local development.
"""

from __future__ import annotations

import os
from pydantic import AnyHttpUrl, BaseModel, Field, ValidationError


class Settings(BaseModel):
    """Pydantic settings for the registry service."""
    heartbeat_interval_s: float = Field(30.0, gt=0)
    health_request_timeout_s: float = Field(5.0, gt=0)
    # instances whose last heartbeat is older than this are not discoverable
    heartbeat_ttl_s: float = Field(30.0, gt=0)
    max_concurrent_probes: int = Field(0, ge=0)  # 0 = unbounded fan-out
    postgrest_url: AnyHttpUrl | None = None
    postgrest_api_key: str | None = None
    persistence_timeout_s: float = Field(5.0, gt=0)
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Load settings from environment variables and return a Settings object."""
    try:
        return Settings(
            heartbeat_interval_s=os.getenv("HEARTBEAT_INTERVAL_SEC", "30"),
            health_request_timeout_s=os.getenv("HEALTH_REQUEST_TIMEOUT_SEC", "5.0"),
            heartbeat_ttl_s=os.getenv("HEARTBEAT_TTL_SEC", "30"),
            max_concurrent_probes=os.getenv("MAX_CONCURRENT_PROBES", "0"),
            postgrest_url=os.getenv("POSTGREST_URL") or None,
            postgrest_api_key=os.getenv("POSTGREST_API_KEY") or None,
            persistence_timeout_s=os.getenv("PERSISTENCE_TIMEOUT_SEC", "5.0"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
    except ValidationError as e:
        raise RuntimeError(f"Invalid configuration: {e}") from e


settings = load_settings()
