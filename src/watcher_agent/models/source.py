"""
Source Models
=============

Video sources watched by the agent and the rotation policy applied to them.

A Source is defined by configuration and never changes at runtime. Its
identity is its position in the rotation queue, not a generated ID.

Example:
    from watcher_agent.models.source import Source, SourceType

    source = Source(
        name="F1 Official",
        url="https://www.youtube.com/@Formula1/videos",
        type=SourceType.CHANNEL,
        priority=1,
        category="F1",
    )
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class SourceType(str, Enum):
    """
    Kind of page a source URL points at.

    Playlists and channels need an extra click to reach a playable video.
    """

    VIDEO = "video"
    PLAYLIST = "playlist"
    CHANNEL = "channel"


class RotationMode(str, Enum):
    """
    Ordering policy for the source rotation queue.

    Attributes:
        SEQUENTIAL: Configuration order
        RANDOM: One uniform permutation generated at startup
        PRIORITY: Stable ascending sort on Source.priority
    """

    SEQUENTIAL = "sequential"
    RANDOM = "random"
    PRIORITY = "priority"


class Source(BaseModel):
    """
    A configured video source.

    Attributes:
        name: Human readable label
        url: Page to navigate to
        type: video, playlist or channel
        priority: Lower value is watched earlier in priority mode
        category: Free-form grouping used for reporting
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Human readable label")
    url: str = Field(..., min_length=1, description="Page URL")
    type: SourceType = Field(default=SourceType.VIDEO, description="Page kind")
    priority: int = Field(default=1, description="Lower = earlier in priority mode")
    category: str = Field(default="general", description="Reporting category")

    @property
    def needs_video_selection(self) -> bool:
        """Whether the page lists videos instead of playing one directly."""
        return self.type in (SourceType.PLAYLIST, SourceType.CHANNEL)
