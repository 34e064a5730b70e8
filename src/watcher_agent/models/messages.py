"""
Uplink Wire Messages
====================

Message schemas exchanged with the Brain over the uplink.

Every frame on the wire is a JSON text message with an event name and a
payload:

    {"event": "watcher:auth", "data": {"agentType": "watcher", ...}}

Direction   Event                          Payload
---------   ----------------------------   ---------------------------------
→ Brain     watcher:auth                   AuthMessage
← Brain     watcher:auth_success           AuthSuccess
← Brain     watcher:auth_error             AuthRejection
→ Brain     watcher:observations           ObservationBatch
← Brain     watcher:observations_ack       ObservationsAck
← Brain     watcher:observations_error     ObservationsRejection
→ Brain     watcher:status                 StatusMessage
← Brain     watcher:command                Command

Commands are surfaced to the caller as events; the uplink does not act on
them.
"""

import json
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from watcher_agent.models.observation import WireModel


EVENT_AUTH = "watcher:auth"
EVENT_AUTH_SUCCESS = "watcher:auth_success"
EVENT_AUTH_ERROR = "watcher:auth_error"
EVENT_OBSERVATIONS = "watcher:observations"
EVENT_OBSERVATIONS_ACK = "watcher:observations_ack"
EVENT_OBSERVATIONS_ERROR = "watcher:observations_error"
EVENT_STATUS = "watcher:status"
EVENT_COMMAND = "watcher:command"


class Envelope(BaseModel):
    """Outer frame of every uplink message."""

    event: str = Field(..., min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)


class AuthMessage(WireModel):
    agent_type: str = "watcher"
    api_key: str
    agent_id: Optional[str] = None
    version: str


class AuthSuccess(WireModel):
    agent_id: str
    session_token: Optional[str] = None


class AuthRejection(WireModel):
    error: str
    code: Optional[str] = None


class ObservationsAck(WireModel):
    batch_id: str
    received: int = 0


class ObservationsRejection(WireModel):
    batch_id: str
    error: str


class StatusMessage(WireModel):
    """Periodic aggregate status pushed to the Brain."""

    agent_id: str = ""
    state: str
    active_streams: int = 0
    total_frames_captured: int = 0
    total_observations_sent: int = 0
    errors_count: int = 0
    uptime: float = 0.0


class Command(WireModel):
    """Inbound command from the Brain, passed through uninterpreted."""

    command_id: str
    type: str
    payload: Optional[Any] = None


def encode_message(event: str, payload: WireModel) -> str:
    """Serialize an event and payload into one wire frame."""
    return json.dumps({"event": event, "data": payload.to_wire()})


def decode_message(raw: str) -> Optional[Envelope]:
    """
    Parse one wire frame.

    Returns:
        Envelope, or None when the frame is not valid JSON or lacks an event
    """
    try:
        return Envelope.model_validate_json(raw)
    except ValidationError:
        return None
