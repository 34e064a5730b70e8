"""
Frame Analysis Hook
===================

Interface for the optional frame analyzer.

Stream sessions hand every Nth captured frame to an analyzer. The vision
or reasoning backend behind it is out of scope here; anything that
implements FrameAnalyzer can be plugged into the Orchestrator.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol

from watcher_agent.models.source import Source


@dataclass(frozen=True, slots=True)
class FrameContext:
    """What the analyzer knows about the frame it receives."""

    stream_id: str
    source: Source
    frame_id: int
    video_id: str
    video_title: str
    current_time: float
    duration: float


@dataclass(slots=True)
class FrameAnalysis:
    """
    Analyzer output.

    Attributes:
        description: Free-text summary of the frame
        detections: Structured detections, attached to the next observation
        insights: Derived insights for the insight store
    """

    description: str = ""
    detections: List[Dict[str, Any]] = field(default_factory=list)
    insights: List[Dict[str, Any]] = field(default_factory=list)


class FrameAnalyzer(Protocol):
    """Protocol for frame analyzers."""

    async def analyze(self, frame: bytes, context: FrameContext) -> FrameAnalysis:
        ...
