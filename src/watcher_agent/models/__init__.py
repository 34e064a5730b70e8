"""
Data Models
===========

Pydantic models for the watcher agent.

This module re-exports all data models for convenient access.

Models:
    Source:
        - Source, SourceType, RotationMode

    Observation:
        - Observation: One capture record
        - StreamInfo: Source context attached to a batch
        - ObservationBatch: Unit of uplink delivery

    Status:
        - StreamState, EngineState
        - StreamStats: Per-session snapshot
        - WatcherStats: Engine-wide snapshot

    Messages:
        - AuthMessage, AuthSuccess, AuthRejection
        - ObservationsAck, ObservationsRejection
        - StatusMessage, Command
"""

from watcher_agent.models.source import RotationMode, Source, SourceType
from watcher_agent.models.observation import Observation, ObservationBatch, StreamInfo
from watcher_agent.models.status import (
    EngineState,
    StreamState,
    StreamStats,
    WatcherStats,
    can_transition,
)
from watcher_agent.models.messages import (
    AuthMessage,
    AuthRejection,
    AuthSuccess,
    Command,
    ObservationsAck,
    ObservationsRejection,
    StatusMessage,
)

__all__ = [
    # Source
    "Source",
    "SourceType",
    "RotationMode",
    # Observation
    "Observation",
    "StreamInfo",
    "ObservationBatch",
    # Status
    "StreamState",
    "EngineState",
    "StreamStats",
    "WatcherStats",
    "can_transition",
    # Messages
    "AuthMessage",
    "AuthSuccess",
    "AuthRejection",
    "ObservationsAck",
    "ObservationsRejection",
    "StatusMessage",
    "Command",
]
