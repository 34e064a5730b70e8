"""
Observation Models
==================

Capture records produced by stream sessions and the batches that carry
them to the Brain.

Wire Contract (camelCase on the wire):
    {
        "agentId": "watcher-1712345678901",
        "batchId": "batch-1712345679000-17",
        "observations": [
            {
                "streamId": "5f0c...",
                "frameId": 42,
                "capturedAt": "2026-10-19T08:15:02.123Z",
                "frameWidth": 1280,
                "frameHeight": 720,
                "detections": [],
                "videoId": "dQw4w9WgXcQ",
                "videoTitle": "Race highlights",
                "currentTime": 84.2,
                "duration": 612.0,
                "category": "F1"
            }
        ],
        "streamInfo": {...}
    }

Both models are frozen. Once an observation is submitted to the uplink it
belongs to the uplink queue, and a batch is never changed after it is built,
so a resend is byte-for-byte the original.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for models that travel over the uplink with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_wire(self) -> Dict[str, Any]:
        """Dump with wire aliases and JSON-compatible values."""
        return self.model_dump(mode="json", by_alias=True)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Observation(WireModel):
    """
    One timestamped capture record from a stream tick.

    Attributes:
        stream_id: Owning stream session
        frame_id: Per-stream counter, starts at 1, strictly increasing
        captured_at: UTC capture time
        frame_width: Width of the captured frame in pixels
        frame_height: Height of the captured frame in pixels
        detections: Detector output (empty unless a detector is attached)
        video_id: Player-reported video identifier
        video_title: Player-reported title
        current_time: Playback position in seconds
        duration: Video duration in seconds
        category: Category of the source being watched
    """

    stream_id: str
    frame_id: int = Field(..., ge=1)
    captured_at: datetime = Field(default_factory=utc_now)
    frame_width: int = Field(default=0, ge=0)
    frame_height: int = Field(default=0, ge=0)
    detections: List[Dict[str, Any]] = Field(default_factory=list)
    video_id: str = ""
    video_title: str = ""
    current_time: float = Field(default=0.0, ge=0.0)
    duration: float = Field(default=0.0, ge=0.0)
    category: str = ""


class StreamInfo(WireModel):
    """Source context attached to a batch."""

    stream_id: str = "unknown"
    video_id: str = ""
    video_title: str = "Unknown"
    source_type: str = "video"
    source_url: str = ""
    category: str = "unknown"


class ObservationBatch(WireModel):
    """
    A bounded group of observations sent as one uplink transmission.

    Delivery is at-least-once: an unacknowledged batch may be sent again
    with the same batch_id.
    """

    agent_id: str
    batch_id: str
    observations: List[Observation]
    stream_info: StreamInfo = Field(default_factory=StreamInfo)
