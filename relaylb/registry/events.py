"""Wire format of backend change events.

Messages on the ``backend_changes`` channel are compact JSON objects::

    {"backend_id": "b1", "status": "unhealthy"}
"""
from __future__ import annotations

import json
from typing import Union

from pydantic import ValidationError

from relaylb.models.schemas import BackendEvent, BackendStatus

CHANGES_CHANNEL = "backend_changes"


class InvalidEvent(ValueError):
    """Raised when a channel payload is not a well-formed change event."""

    def __init__(self, payload: object, reason: str):
        super().__init__(f"invalid backend event ({reason}): {payload!r}")
        self.payload = payload
        self.reason = reason


def encode_event(backend_id: str, status: Union[BackendStatus, str]) -> str:
    """Serialize a change event to the channel's JSON form."""
    value = status.value if isinstance(status, BackendStatus) else str(status)
    return BackendEvent(backend_id=backend_id, status=value).model_dump_json()


def decode_event(payload: Union[str, bytes]) -> BackendEvent:
    """Parse a channel payload. Raises InvalidEvent on any malformed input."""
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidEvent(payload, "not utf-8") from e
    try:
        data = json.loads(payload)
    except (TypeError, ValueError) as e:
        raise InvalidEvent(payload, "not json") from e
    if not isinstance(data, dict):
        raise InvalidEvent(payload, "not an object")
    try:
        # no coercion, e.g. a numeric backend_id is rejected
        return BackendEvent.model_validate(data, strict=True)
    except ValidationError as e:
        raise InvalidEvent(payload, "missing or mistyped fields") from e
