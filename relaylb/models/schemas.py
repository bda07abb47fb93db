"""Pydantic models shared by the router, orchestrator and worker."""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, HttpUrl, TypeAdapter, ValidationError, field_validator


_HTTP_URL = TypeAdapter(HttpUrl)


class BackendStatus(str, Enum):
    """Health status of a backend as stored in the registry."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class Backend(BaseModel):
    """A backend worker reachable via an absolute base URL."""

    id: str
    url: str
    status: Optional[BackendStatus] = None
    last_checked: Optional[int] = None  # unix seconds
    active_conns: int = 0  # not used by round-robin selection


class BackendIn(BaseModel):
    """Input model used to register a backend in the registry."""
    id: str
    url: str

    @field_validator("url")
    @classmethod
    def _check_url(cls, v: str) -> str:
        # validated as an http(s) url but stored as given, without normalization
        try:
            _HTTP_URL.validate_python(v)
        except ValidationError as e:
            raise ValueError(f"invalid backend url: {v!r}") from e
        return v


class BackendEvent(BaseModel):
    """Change notification published on the ``backend_changes`` channel.

    ``status`` stays a plain string: ``"healthy"`` adds a backend to the live
    set, every other value removes it.
    """

    backend_id: str
    status: str

    @property
    def is_healthy(self) -> bool:
        return self.status == BackendStatus.HEALTHY.value


class WorkerResponse(BaseModel):
    """Body returned by a worker's ``/process`` endpoint."""
    node_id: str
    processing_time_ms: int
