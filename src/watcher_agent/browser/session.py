"""
Browser Session Contract
========================

The interface a stream session requires from its embedded browser.

A browser session renders one source page, locates the video player,
reports playback state and captures frames. Stream sessions own exactly
one browser session each and never share it.

Implementations:
    - PlaywrightBrowserSession: Headless Chromium via Playwright (production)
    - MockBrowserSession: Deterministic scripted player (testing, dry runs)
"""

from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from watcher_agent.models.source import Source


@dataclass(frozen=True, slots=True)
class PlaybackState:
    """
    Player state as reported by the page.

    Attributes:
        is_playing: Video is advancing (not paused, not ended)
        is_buffering: Player lacks data to continue playback
        current_time: Playback position in seconds
        duration: Video duration in seconds (0 when unknown)
        video_id: Identifier parsed from the page URL
        title: Video title as shown on the page
    """

    is_playing: bool = False
    is_buffering: bool = False
    current_time: float = 0.0
    duration: float = 0.0
    video_id: str = ""
    title: str = ""


class BrowserSession(Protocol):
    """
    Protocol for browser backends.

    All methods are coroutines. navigate_to_source raises NavigationError
    when the page cannot be loaded or shows no video.
    """

    async def launch(self) -> None:
        ...

    async def navigate_to_source(self, source: Source) -> None:
        ...

    async def get_playback_state(self) -> PlaybackState:
        ...

    async def capture_frame(self) -> Optional[bytes]:
        """Encoded image bytes, or None when nothing could be captured."""
        ...

    async def pause(self) -> None:
        ...

    async def resume(self) -> None:
        ...

    async def close(self) -> None:
        ...


BrowserFactory = Callable[[], BrowserSession]
