"""Configuration shared by the router, orchestrator and worker processes.

Provides strongly-typed settings using Pydantic and a loader from environment
variables with defaults suitable for the docker-compose topology.
"""

from __future__ import annotations

import os

from pydantic import BaseModel, Field, ValidationError, field_validator


def _parse_seed(raw: str) -> dict[str, str]:
    """Parse ``"b1=http://w1:8080,b2=http://w2:8080"`` into an id -> url map."""
    seeds: dict[str, str] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        backend_id, sep, url = item.partition("=")
        if not sep or not backend_id.strip() or not url.strip():
            raise ValueError(f"malformed seed entry: {item!r}")
        seeds[backend_id.strip()] = url.strip()
    return seeds


class Settings(BaseModel):
    """Pydantic settings for all relaylb processes."""

    redis_url: str = "redis://redis:6379/0"

    # orchestrator
    health_interval_s: float = Field(default=5.0, gt=0)
    probe_timeout_s: float = Field(default=2.0, gt=0)
    seed_backends: dict[str, str] = Field(default_factory=dict)

    # router; 0 disables the forward timeout / the resync loop
    forward_timeout_s: float = Field(default=30.0, ge=0)
    resync_interval_s: float = Field(default=30.0, ge=0)

    # worker
    node_id: str = "backend-unknown"
    port: int = 8080
    process_min_ms: int = Field(default=500, ge=0)
    process_max_ms: int = Field(default=2000, ge=0)

    @field_validator("process_max_ms")
    @classmethod
    def _max_not_below_min(cls, v: int, info) -> int:
        lo = info.data.get("process_min_ms", 0)
        if v < lo:
            raise ValueError("process_max_ms must be >= process_min_ms")
        return v


def load_settings() -> Settings:
    """Load settings from environment variables and return a Settings object."""
    try:
        return Settings(
            redis_url=os.getenv("REDIS_URL", "redis://redis:6379/0"),
            health_interval_s=float(os.getenv("HEALTH_INTERVAL_S", "5.0")),
            probe_timeout_s=float(os.getenv("PROBE_TIMEOUT_S", "2.0")),
            seed_backends=_parse_seed(os.getenv("SEED_BACKENDS", "")),
            forward_timeout_s=float(os.getenv("FORWARD_TIMEOUT_S", "30.0")),
            resync_interval_s=float(os.getenv("RESYNC_INTERVAL_S", "30.0")),
            node_id=os.getenv("NODE_ID") or "backend-unknown",
            port=int(os.getenv("PORT") or "8080"),
            process_min_ms=int(os.getenv("PROCESS_MIN_MS", "500")),
            process_max_ms=int(os.getenv("PROCESS_MAX_MS", "2000")),
        )
    except (ValidationError, ValueError) as e:
        raise RuntimeError(f"Invalid configuration: {e}") from e


settings = load_settings()
