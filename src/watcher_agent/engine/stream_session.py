"""
Stream Session
==============

One source, one browser, one capture loop.

This module provides the StreamSession class which:
    - Launches its browser and navigates to the assigned source
    - Runs a periodic capture loop at the configured fps
    - Builds an Observation per captured frame and submits it to the uplink
    - Tracks the per-stream state machine (playing, buffering, stalled, ...)
    - Escalates to ERROR on repeated tick failures or a long stall
    - Hands every Nth frame to an optional frame analyzer

Capture Tick:
    1. Capture a frame and read the player state (each call has a deadline)
    2. Update stall detection and the stream state
    3. Re-check liveness (stop may have been requested meanwhile)
    4. Submit an Observation with frame_id = frames_captured

Design Rules:
    - One tick in flight at a time
    - A failed tick is logged and counted, never fatal on its own
    - Stop is idempotent and always releases the browser
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from watcher_agent.browser.frames import frame_dimensions
from watcher_agent.browser.session import BrowserSession, PlaybackState
from watcher_agent.config import CaptureConfig
from watcher_agent.engine.analysis import FrameAnalyzer, FrameContext
from watcher_agent.errors import CaptureError
from watcher_agent.events import EventBus, EventType
from watcher_agent.models.observation import Observation
from watcher_agent.models.source import Source
from watcher_agent.models.status import StreamState, StreamStats, can_transition
from watcher_agent.uplink.channel import UplinkChannel


logger = logging.getLogger(__name__)


# Upper bound for an in-flight tick to finish after stop is requested
STOP_TIMEOUT_SECONDS = 5.0


class StallDetector:
    """
    Counts identical consecutive playback positions.

    Example:
        detector = StallDetector(threshold=3)
        detector.observe(5.0)   # False
        detector.observe(5.0)   # False
        detector.observe(5.0)   # True
        detector.observe(6.0)   # False
    """

    def __init__(self, threshold: int = 3) -> None:
        self.threshold = threshold
        self._last: Optional[float] = None
        self._run: int = 0

    @property
    def run_length(self) -> int:
        return self._run

    def observe(self, position: float) -> bool:
        """Record a reading; True once it repeated threshold times in a row."""
        if self._last is not None and position == self._last:
            self._run += 1
        else:
            self._last = position
            self._run = 1
        return self._run >= self.threshold

    def reset(self) -> None:
        self._last = None
        self._run = 0


class StreamSession:
    """
    Capture session for a single source.

    Attributes:
        stream_id: Unique session identifier
        source: Source being watched
        browser: Browser session owned exclusively by this stream
    """

    def __init__(
        self,
        source: Source,
        browser: BrowserSession,
        uplink: UplinkChannel,
        capture: CaptureConfig,
        call_timeout: float = 10.0,
        events: Optional[EventBus] = None,
        analyzer: Optional[FrameAnalyzer] = None,
    ) -> None:
        """
        Initialize stream session.

        Args:
            source: Source to watch
            browser: Unlaunched browser session
            uplink: Channel that receives the observations
            capture: Capture loop settings
            call_timeout: Deadline in seconds for each browser call in a tick
            events: Bus for state change and failure events
            analyzer: Optional analyzer for every Nth frame
        """
        self.stream_id = str(uuid.uuid4())
        self.source = source
        self.browser = browser
        self.uplink = uplink
        self.capture = capture
        self.call_timeout = call_timeout
        self.analyzer = analyzer
        self._events = events if events is not None else EventBus()

        # State
        self._state: StreamState = StreamState.STARTING
        self._paused: bool = False
        self._stopped: bool = False
        self._stop_event = asyncio.Event()
        self._stall = StallDetector(capture.stall_threshold_ticks)
        self._stalled_ticks: int = 0
        self._consecutive_failures: int = 0

        # Playback snapshot
        self._video_id: str = ""
        self._video_title: str = ""
        self._current_time: float = 0.0
        self._duration: float = 0.0

        # Counters
        self.frames_captured: int = 0
        self.frames_analyzed: int = 0
        self.errors_count: int = 0
        self.started_at: float = time.time()
        self.last_activity: float = self.started_at
        self.error_message: Optional[str] = None

        # Tasks
        self._capture_task: Optional[asyncio.Task] = None
        self._analysis_task: Optional[asyncio.Task] = None
        self._pending_detections: List[Dict[str, Any]] = []

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def short_id(self) -> str:
        return self.stream_id[:8]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """
        Launch the browser, open the source and start the capture loop.

        Raises:
            Exception: Whatever the browser raised while launching or
                navigating. The session is in ERROR with its browser
                released by then.
        """
        logger.info(f"[{self.short_id}] Starting stream: {self.source.name}")

        try:
            await self.browser.launch()
            await self.browser.navigate_to_source(self.source)
        except asyncio.CancelledError:
            self._stopped = True
            self._transition(StreamState.STOPPED)
            await self._close_browser()
            raise
        except Exception as e:
            self._fail(f"Failed to start: {e}")
            await self._close_browser()
            raise

        self.uplink.register_stream(self.stream_id, self.source)
        self._events.emit(
            EventType.STREAM_STARTED,
            stream_id=self.stream_id,
            source=self.source.name,
            category=self.source.category,
        )

        self._capture_task = asyncio.create_task(
            self._capture_loop(),
            name=f"capture_{self.short_id}",
        )
        logger.info(
            f"[{self.short_id}] Capture loop started at {self.capture.fps} fps"
        )

    async def stop(self) -> None:
        """
        Stop capturing and release the browser.

        Safe to call multiple times.
        """
        if self._stopped:
            return
        self._stopped = True
        self._stop_event.set()

        logger.info(f"[{self.short_id}] Stopping stream: {self.source.name}")

        try:
            for task in (self._capture_task, self._analysis_task):
                if task is None or task.done():
                    continue
                done, _ = await asyncio.wait({task}, timeout=STOP_TIMEOUT_SECONDS)
                if not done:
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)
        finally:
            # Runs even when the caller is cancelled mid-stop
            for task in (self._capture_task, self._analysis_task):
                if task is not None and not task.done():
                    task.cancel()
            self._transition(StreamState.STOPPED)
            await self._close_browser()
            self.uplink.unregister_stream(self.stream_id)

        logger.info(
            f"[{self.short_id}] Stream stopped after {self.frames_captured} frames"
        )

    async def pause(self) -> None:
        """Suspend submissions and stall detection and pause the player."""
        if self._paused or self._state.is_terminal:
            return
        self._paused = True
        self._stall.reset()
        self._stalled_ticks = 0

        try:
            await asyncio.wait_for(self.browser.pause(), timeout=self.call_timeout)
        except Exception as e:
            logger.warning(f"[{self.short_id}] Failed to pause player: {e}")
        logger.info(f"[{self.short_id}] Paused")

    async def resume(self) -> None:
        if not self._paused or self._state.is_terminal:
            return
        self._paused = False
        self._stall.reset()
        self._stalled_ticks = 0

        try:
            await asyncio.wait_for(self.browser.resume(), timeout=self.call_timeout)
        except Exception as e:
            logger.warning(f"[{self.short_id}] Failed to resume player: {e}")
        logger.info(f"[{self.short_id}] Resumed")

    async def _close_browser(self) -> None:
        try:
            await self.browser.close()
        except Exception as e:
            logger.warning(f"[{self.short_id}] Browser close failed: {e}")

    # -------------------------------------------------------------------------
    # Capture loop
    # -------------------------------------------------------------------------

    async def _capture_loop(self) -> None:
        interval = 1.0 / self.capture.fps

        while not self._state.is_terminal and not self._stop_event.is_set():
            await self._tick()

            if self._state.is_terminal:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

        logger.debug(f"[{self.short_id}] Capture loop exited in state {self._state.value}")

    async def _tick(self) -> None:
        if self._paused or self._state.is_terminal:
            return

        try:
            frame = await asyncio.wait_for(
                self.browser.capture_frame(),
                timeout=self.call_timeout,
            )
            playback = await asyncio.wait_for(
                self.browser.get_playback_state(),
                timeout=self.call_timeout,
            )
        except asyncio.TimeoutError:
            self._record_failure(f"Browser call exceeded {self.call_timeout}s")
            return
        except Exception as e:
            self._record_failure(str(e))
            return

        if not frame:
            self._record_failure("No frame captured")
            return

        self._consecutive_failures = 0
        self._apply_playback(playback)

        # Stop, pause or escalation may have happened while we awaited
        if self._state.is_terminal or self._stop_event.is_set() or self._paused:
            return

        self.frames_captured += 1
        self.last_activity = time.time()
        observation = self._build_observation(frame)
        await self.uplink.send_observation(observation)

        every = self.capture.analyze_every_nth_frame
        if self.analyzer is not None and self.frames_captured % every == 0:
            self._schedule_analysis(frame, observation.frame_id)

    def _record_failure(self, message: str) -> None:
        self._consecutive_failures += 1
        self.errors_count += 1
        limit = self.capture.max_consecutive_failures

        logger.warning(
            f"[{self.short_id}] Capture tick failed "
            f"({self._consecutive_failures}/{limit}): {message}"
        )
        if self._consecutive_failures >= limit:
            self._fail(f"{self._consecutive_failures} consecutive capture failures: {message}")

    def _apply_playback(self, playback: PlaybackState) -> None:
        self._current_time = playback.current_time
        self._duration = playback.duration
        if playback.video_id:
            self._video_id = playback.video_id
        if playback.title:
            self._video_title = playback.title

        if self._stall.observe(playback.current_time):
            self._stalled_ticks += 1
            self._transition(StreamState.STALLED)
            if self._stalled_ticks >= self.capture.max_stalled_ticks:
                self._fail(f"Playback stalled for {self._stalled_ticks} ticks")
            return

        self._stalled_ticks = 0
        if playback.is_buffering:
            self._transition(StreamState.BUFFERING)
        elif playback.is_playing or self._state == StreamState.STALLED:
            self._transition(StreamState.PLAYING)

    def _build_observation(self, frame: bytes) -> Observation:
        try:
            width, height = frame_dimensions(frame)
        except CaptureError as e:
            logger.debug(f"[{self.short_id}] Using configured resolution: {e}")
            width = self.capture.resolution.width
            height = self.capture.resolution.height

        detections, self._pending_detections = self._pending_detections, []

        return Observation(
            stream_id=self.stream_id,
            frame_id=self.frames_captured,
            frame_width=width,
            frame_height=height,
            detections=detections,
            video_id=self._video_id,
            video_title=self._video_title,
            current_time=max(self._current_time, 0.0),
            duration=max(self._duration, 0.0),
            category=self.source.category,
        )

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------

    def _schedule_analysis(self, frame: bytes, frame_id: int) -> None:
        if self._analysis_task is not None and not self._analysis_task.done():
            logger.debug(f"[{self.short_id}] Analysis in flight, skipping frame {frame_id}")
            return

        context = FrameContext(
            stream_id=self.stream_id,
            source=self.source,
            frame_id=frame_id,
            video_id=self._video_id,
            video_title=self._video_title,
            current_time=self._current_time,
            duration=self._duration,
        )
        self._analysis_task = asyncio.create_task(
            self._analyze(frame, context),
            name=f"analysis_{self.short_id}",
        )

    async def _analyze(self, frame: bytes, context: FrameContext) -> None:
        try:
            analysis = await self.analyzer.analyze(frame, context)
        except Exception as e:
            self.errors_count += 1
            logger.error(f"[{self.short_id}] Frame analysis failed: {e}")
            return

        self.frames_analyzed += 1
        self._pending_detections.extend(analysis.detections)
        self._events.emit(
            EventType.FRAME_ANALYZED,
            stream_id=self.stream_id,
            frame_id=context.frame_id,
            video_id=context.video_id,
            video_title=context.video_title,
            category=self.source.category,
            current_time=context.current_time,
            description=analysis.description,
            insights=list(analysis.insights),
        )

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def _transition(self, target: StreamState) -> bool:
        current = self._state
        if current == target:
            return False
        if not can_transition(current, target):
            logger.debug(
                f"[{self.short_id}] Ignoring transition {current.value} -> {target.value}"
            )
            return False

        self._state = target
        logger.info(f"[{self.short_id}] {current.value} -> {target.value}")
        self._events.emit(
            EventType.STREAM_STATE_CHANGED,
            stream_id=self.stream_id,
            previous=current.value,
            state=target.value,
        )
        return True

    def _fail(self, message: str) -> None:
        self.error_message = message
        if self._transition(StreamState.ERROR):
            logger.error(f"[{self.short_id}] Stream failed: {message}")
            self._events.emit(
                EventType.STREAM_FAILED,
                stream_id=self.stream_id,
                source=self.source.name,
                error=message,
            )

    def get_stats(self) -> StreamStats:
        """Point-in-time snapshot of this session."""
        return StreamStats(
            stream_id=self.stream_id,
            source=self.source,
            state=self._state,
            video_id=self._video_id,
            video_title=self._video_title,
            current_time=self._current_time,
            duration=self._duration,
            frames_captured=self.frames_captured,
            frames_analyzed=self.frames_analyzed,
            started_at=self.started_at,
            last_activity=self.last_activity,
            error_message=self.error_message,
        )
