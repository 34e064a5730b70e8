"""
Status Models
=============

Per-stream and engine-wide state plus the point-in-time snapshots exposed
to the health surface and to the Brain.

Stream State Machine:
    starting → playing ⇄ buffering ⇄ stalled → {playing | buffering | error}
    any state → error
    any state → stopped

    STOPPED is terminal. ERROR only allows STOPPED, so an errored session
    can still release its browser when it is rotated out.

Example:
    from watcher_agent.models.status import StreamState, can_transition

    can_transition(StreamState.PLAYING, StreamState.STALLED)   # True
    can_transition(StreamState.STOPPED, StreamState.PLAYING)   # False
"""

from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field

from watcher_agent.models.source import Source


class StreamState(str, Enum):
    """
    Lifecycle state of a single stream session.

    Attributes:
        STARTING: Browser launched, waiting for the player to report playback
        PLAYING: Player reports active playback
        BUFFERING: Player reports insufficient buffered data
        STALLED: Playback position frozen for too many consecutive ticks
        ERROR: Unrecoverable capture or navigation failure
        STOPPED: Explicitly stopped, browser released
    """

    STARTING = "starting"
    PLAYING = "playing"
    BUFFERING = "buffering"
    STALLED = "stalled"
    ERROR = "error"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        """Capture loop ends once a session reaches a terminal state."""
        return self in (StreamState.ERROR, StreamState.STOPPED)


_TRANSITIONS: Dict[StreamState, FrozenSet[StreamState]] = {
    StreamState.STARTING: frozenset({
        StreamState.PLAYING, StreamState.ERROR, StreamState.STOPPED,
    }),
    StreamState.PLAYING: frozenset({
        StreamState.BUFFERING, StreamState.STALLED,
        StreamState.ERROR, StreamState.STOPPED,
    }),
    StreamState.BUFFERING: frozenset({
        StreamState.PLAYING, StreamState.STALLED,
        StreamState.ERROR, StreamState.STOPPED,
    }),
    StreamState.STALLED: frozenset({
        StreamState.PLAYING, StreamState.BUFFERING,
        StreamState.ERROR, StreamState.STOPPED,
    }),
    StreamState.ERROR: frozenset({StreamState.STOPPED}),
    StreamState.STOPPED: frozenset(),
}


def can_transition(current: StreamState, target: StreamState) -> bool:
    """Whether the state machine allows current → target."""
    return target in _TRANSITIONS[current]


class EngineState(str, Enum):
    """Orchestrator lifecycle state."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"


class StreamStats(BaseModel):
    """
    Snapshot of one stream session.

    Built on demand from the session's fields; holding a StreamStats never
    keeps the session alive or blocks it.
    """

    stream_id: str
    source: Source
    state: StreamState = StreamState.STARTING
    video_id: str = ""
    video_title: str = ""
    current_time: float = 0.0
    duration: float = 0.0
    frames_captured: int = Field(default=0, ge=0)
    frames_analyzed: int = Field(default=0, ge=0)
    started_at: float = Field(..., description="UNIX time the session started")
    last_activity: float = Field(..., description="UNIX time of the last captured frame")
    error_message: Optional[str] = None


class WatcherStats(BaseModel):
    """
    Aggregate snapshot of the orchestrator.

    Totals combine live sessions with running totals folded in from
    sessions that were rotated out or stopped.
    """

    state: EngineState
    streams: List[StreamStats] = Field(default_factory=list)
    active_streams: int = 0
    uplink_connected: bool = False
    total_frames_captured: int = 0
    total_frames_analyzed: int = 0
    total_observations_sent: int = 0
    observations_dropped: int = 0
    queued_observations: int = 0
    rotations: int = 0
    session_failures: int = 0
    errors_count: int = 0
    uplink_reconnects: int = 0
    started_at: Optional[float] = None
    uptime_seconds: float = 0.0
    paused_reason: Optional[str] = None
