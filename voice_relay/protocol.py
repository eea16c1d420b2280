"""
protocol.py — client websocket envelope ``{"type": str, "data": object}``.
"""

from __future__ import annotations

import json
import logging
from typing import Optional, Union

from pydantic import BaseModel, Field, ValidationError

log = logging.getLogger("voice_relay.protocol")


class Envelope(BaseModel):
    type: str
    data: dict = Field(default_factory=dict)


def encode(event_type: str, data: Optional[dict] = None) -> str:
    return json.dumps({"type": event_type, "data": data or {}})


def parse_client_frame(payload: Union[str, bytes, None]) -> Union[Envelope, bytes, None]:
    """Classify one inbound frame.

    JSON envelopes win over binary; anything that is not JSON and arrived as
    bytes is treated as audio.  Text that is not a valid envelope is dropped.
    """
    if payload is None:
        return None
    try:
        decoded = json.loads(payload)
    except (ValueError, UnicodeDecodeError):
        if isinstance(payload, bytes):
            return payload
        log.warning("event=client_frame_dropped reason=invalid_json chars=%d", len(payload))
        return None

    try:
        return Envelope.model_validate(decoded)
    except ValidationError as exc:
        log.warning("event=client_frame_dropped reason=invalid_envelope error=%s", exc.errors()[:1])
        return None
