"""
Mock Browser Session
====================

Deterministic browser backend for tests and dry runs.

The mock simulates:
    - A player that advances one tick of video time per state read
    - Optional scripted playback positions (to reproduce stalls)
    - Optional navigation failure
    - Synthetic JPEG frames of the configured size

Select it with `browser.backend: mock` to exercise the whole pipeline
against a real Brain without launching Chromium.
"""

import logging
from typing import List, Optional, Sequence

from watcher_agent.browser.frames import render_test_frame
from watcher_agent.browser.session import PlaybackState
from watcher_agent.errors import CaptureError, NavigationError
from watcher_agent.models.source import Source


logger = logging.getLogger(__name__)


class MockBrowserSession:
    """
    Scripted stand-in for a real browser.

    Attributes:
        calls: Names of the contract methods invoked, in order
        source: Source passed to navigate_to_source
        closed: Whether close() has been called
    """

    def __init__(
        self,
        width: int = 1280,
        height: int = 720,
        step_seconds: float = 1.0,
        duration: float = 600.0,
        positions: Optional[Sequence[float]] = None,
        fail_navigation: bool = False,
        quality: int = 80,
    ) -> None:
        """
        Initialize mock browser session.

        Args:
            width: Frame width in pixels
            height: Frame height in pixels
            step_seconds: Video time advanced per state read while playing
            duration: Reported video duration
            positions: Scripted positions returned by successive state
                reads; the last one repeats once the script runs out
            fail_navigation: Raise NavigationError from navigate_to_source
            quality: JPEG quality of synthetic frames
        """
        self.width = width
        self.height = height
        self.step_seconds = step_seconds
        self.duration = duration
        self.positions: Optional[List[float]] = list(positions) if positions else None
        self.fail_navigation = fail_navigation
        self.quality = quality

        self.calls: List[str] = []
        self.source: Optional[Source] = None
        self.closed: bool = False
        self.paused: bool = False

        self._launched = False
        self._reads = 0
        self._position = 0.0
        self._frames = 0

    async def launch(self) -> None:
        self.calls.append("launch")
        self._launched = True

    async def navigate_to_source(self, source: Source) -> None:
        self.calls.append("navigate_to_source")
        if not self._launched:
            raise NavigationError("Browser not launched")
        if self.fail_navigation:
            raise NavigationError(f"Navigation to {source.url} blocked")
        self.source = source
        logger.debug(f"Mock navigation to {source.url}")

    async def get_playback_state(self) -> PlaybackState:
        self._ensure_open()

        if self.positions is not None:
            index = min(self._reads, len(self.positions) - 1)
            self._position = self.positions[index]
        elif not self.paused:
            self._position = min(self._position + self.step_seconds, self.duration)
        self._reads += 1

        video_id = ""
        title = ""
        if self.source is not None:
            video_id = self.source.url.rstrip("/").rsplit("/", 1)[-1]
            title = self.source.name

        return PlaybackState(
            is_playing=not self.paused,
            is_buffering=False,
            current_time=self._position,
            duration=self.duration,
            video_id=video_id,
            title=title,
        )

    async def capture_frame(self) -> Optional[bytes]:
        self._ensure_open()
        self._frames += 1
        return render_test_frame(self.width, self.height, self._frames, self.quality)

    async def pause(self) -> None:
        self.calls.append("pause")
        self.paused = True

    async def resume(self) -> None:
        self.calls.append("resume")
        self.paused = False

    async def close(self) -> None:
        self.calls.append("close")
        self.closed = True

    def _ensure_open(self) -> None:
        if self.closed or not self._launched:
            raise CaptureError("Browser session is not open")
