"""
Orchestrator
============

Keeps a fixed number of stream sessions running against the rotation queue.

This module provides the Orchestrator class which:
    - Connects the uplink before anything else
    - Starts max_concurrent sessions, one per source off the queue
    - Rotates the oldest session out on a timer and tops the pool back
      up to max_concurrent
    - Pushes aggregate status to the Brain every 30 seconds
    - Pauses and resumes every session on request
    - Stops sessions concurrently on shutdown, best effort

Timers:
    - Rotation: streams.rotation.interval_minutes (when rotation is enabled)
    - Status: STATUS_INTERVAL_SECONDS, independent of rotation

Design Rules:
    - Startup connect/auth errors propagate; nothing else does
    - A session that fails to start is logged, counted and skipped
    - Rotation is not reentrant; a tick during a rotation is skipped
    - Shutdown waits for an in-flight rotation instead of cancelling it
    - Totals of retired sessions are folded into running totals
"""

import asyncio
import logging
import time
from typing import Callable, List, Optional

from watcher_agent.browser.session import BrowserFactory
from watcher_agent.config import Settings
from watcher_agent.engine.analysis import FrameAnalyzer
from watcher_agent.engine.rotation import SourceQueue
from watcher_agent.engine.stream_session import StreamSession
from watcher_agent.events import EventBus, EventType
from watcher_agent.models.messages import StatusMessage
from watcher_agent.models.source import Source
from watcher_agent.models.status import EngineState, StreamStats, WatcherStats
from watcher_agent.uplink.channel import UplinkChannel


logger = logging.getLogger(__name__)


STATUS_INTERVAL_SECONDS = 30.0

SessionFactory = Callable[[Source], StreamSession]


class Orchestrator:
    """
    Pool of concurrent stream sessions.

    Attributes:
        settings: Full agent settings
        uplink: Shared channel to the Brain
        queue: Rotation order of the configured sources

    Example:
        orchestrator = Orchestrator(settings, uplink, browser_factory, events=bus)
        await orchestrator.start()
        ...
        await orchestrator.stop()
    """

    def __init__(
        self,
        settings: Settings,
        uplink: UplinkChannel,
        browser_factory: BrowserFactory,
        events: Optional[EventBus] = None,
        analyzer: Optional[FrameAnalyzer] = None,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        """
        Initialize orchestrator.

        Args:
            settings: Agent settings (streams, capture, browser)
            uplink: Channel shared by every session
            browser_factory: Builds one browser session per stream
            events: Bus for rotation, status and session events
            analyzer: Optional frame analyzer handed to every session
            session_factory: Override for building sessions
        """
        self.settings = settings
        self.uplink = uplink
        self.browser_factory = browser_factory
        self.analyzer = analyzer
        self._events = events if events is not None else uplink.events
        self._session_factory = session_factory or self._create_session

        rotation = settings.streams.rotation
        self.queue = SourceQueue(settings.streams.sources, rotation.mode, rotation.seed)

        self._state: EngineState = EngineState.IDLE
        self._sessions: List[StreamSession] = []
        self._rotation_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._rotation_task: Optional[asyncio.Task] = None
        self._status_task: Optional[asyncio.Task] = None
        self._paused_reason: Optional[str] = None
        self._started_at: Optional[float] = None

        # Running totals of retired sessions
        self._retired_frames_captured: int = 0
        self._retired_frames_analyzed: int = 0
        self._retired_errors: int = 0
        self._rotations: int = 0
        self._session_failures: int = 0

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def sessions(self) -> List[StreamSession]:
        """Active sessions in start order (copy)."""
        return list(self._sessions)

    def _create_session(self, source: Source) -> StreamSession:
        return StreamSession(
            source=source,
            browser=self.browser_factory(),
            uplink=self.uplink,
            capture=self.settings.capture,
            call_timeout=self.settings.browser.call_timeout_seconds,
            events=self._events,
            analyzer=self.analyzer,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """
        Connect the uplink and start the session pool.

        Raises:
            ConnectError: Uplink transport could not be opened
            AuthError: Brain rejected the credentials
        """
        logger.info("=" * 60)
        logger.info("Watcher Orchestrator Starting")
        logger.info("=" * 60)

        self._state = EngineState.STARTING
        self._stop_event.clear()

        try:
            await self.uplink.connect()
        except Exception:
            self._state = EngineState.ERROR
            raise

        self._started_at = time.time()
        max_concurrent = self.settings.streams.max_concurrent
        logger.info(f"Starting {max_concurrent} concurrent streams")

        for _ in range(max_concurrent):
            await self._start_session(self.queue.next_source())

        rotation = self.settings.streams.rotation
        if rotation.enabled:
            self._rotation_task = asyncio.create_task(
                self._periodic(rotation.interval_minutes * 60.0, self.rotate),
                name="rotation_timer",
            )
            logger.info(f"Rotation every {rotation.interval_minutes} minutes")

        self._status_task = asyncio.create_task(
            self._periodic(STATUS_INTERVAL_SECONDS, self.report_status),
            name="status_timer",
        )

        self._state = EngineState.RUNNING
        logger.info(f"Orchestrator running with {len(self._sessions)} streams")

    async def _start_session(self, source: Source) -> Optional[StreamSession]:
        session = self._session_factory(source)
        try:
            await session.start()
        except Exception as e:
            self._session_failures += 1
            self._retired_errors += session.errors_count + 1
            logger.error(f"Failed to start stream for {source.name}: {e}")
            return None

        self._sessions.append(session)
        logger.info(f"Stream {session.short_id} watching {source.name} ({source.category})")
        return session

    async def _periodic(self, interval: float, action: Callable) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await action()
            except Exception as e:
                logger.error(f"Periodic {action.__name__} failed: {e}")

    async def stop(self) -> None:
        """
        Stop timers, sessions and the uplink.

        An in-flight rotation is allowed to finish first; its timer is not
        cancelled mid-rotation. Errors are logged, never raised. Safe to
        call multiple times.
        """
        if self._state in (EngineState.STOPPED, EngineState.IDLE):
            return

        logger.info("Stopping orchestrator...")
        self._stop_event.set()

        if self._status_task is not None and not self._status_task.done():
            self._status_task.cancel()
        await asyncio.gather(
            *(t for t in (self._rotation_task, self._status_task) if t is not None),
            return_exceptions=True,
        )
        self._rotation_task = None
        self._status_task = None

        # Waits for a rotation started by a command; later ones see the stop event
        async with self._rotation_lock:
            sessions = list(self._sessions)
            results = await asyncio.gather(
                *(session.stop() for session in sessions),
                return_exceptions=True,
            )
            for session, result in zip(sessions, results):
                if isinstance(result, BaseException):
                    logger.error(f"Error stopping stream {session.short_id}: {result}")
                self._retire(session, reason="shutdown")
            self._sessions.clear()

        try:
            await self.uplink.disconnect()
        except Exception as e:
            logger.error(f"Error disconnecting uplink: {e}")

        self._state = EngineState.STOPPED
        logger.info("Orchestrator stopped")

    def _retire(self, session: StreamSession, reason: str) -> StreamStats:
        stats = session.get_stats()
        self._retired_frames_captured += session.frames_captured
        self._retired_frames_analyzed += session.frames_analyzed
        self._retired_errors += session.errors_count

        self._events.emit(
            EventType.STREAM_RETIRED,
            stream_id=session.stream_id,
            source=session.source.name,
            category=session.source.category,
            reason=reason,
            frames_captured=session.frames_captured,
            watch_seconds=max(time.time() - session.started_at, 0.0),
        )
        return stats

    # -------------------------------------------------------------------------
    # Rotation
    # -------------------------------------------------------------------------

    async def rotate(self) -> None:
        """
        Replace the oldest session with one for the next source.

        When fewer than max_concurrent sessions are running, enough new
        sessions are started to restore the count. Skipped while another
        rotation is running or once shutdown has begun.
        """
        if self._rotation_lock.locked():
            logger.debug("Rotation already in progress, skipping tick")
            return

        async with self._rotation_lock:
            if self._stop_event.is_set() or self._state in (EngineState.STOPPED, EngineState.ERROR):
                return
            if not self._sessions:
                logger.warning("No active streams to rotate")
                return

            # min() keeps the first of equal start times, i.e. insertion order
            oldest = min(self._sessions, key=lambda s: s.started_at)
            logger.info(
                f"Rotating out {oldest.short_id} ({oldest.source.name}) "
                f"after {oldest.frames_captured} frames"
            )
            try:
                await oldest.stop()
            except Exception as e:
                logger.error(f"Error stopping stream {oldest.short_id}: {e}")
            self._sessions.remove(oldest)
            self._retire(oldest, reason="rotation")
            self._rotations += 1

            max_concurrent = self.settings.streams.max_concurrent
            missing = max_concurrent - len(self._sessions)
            if missing > 1:
                logger.info(f"Restoring stream count to {max_concurrent}")

            started: List[str] = []
            sources: List[str] = []
            for _ in range(missing):
                if self._stop_event.is_set():
                    break
                source = self.queue.next_source()
                sources.append(source.name)
                session = await self._start_session(source)
                if session is None:
                    continue
                started.append(session.stream_id)
                if self._state == EngineState.PAUSED:
                    await session.pause()

            self._events.emit(
                EventType.ROTATED,
                retired=oldest.stream_id,
                started=started,
                sources=sources,
            )

    # -------------------------------------------------------------------------
    # Pause / Resume
    # -------------------------------------------------------------------------

    async def pause(self, reason: Optional[str] = None) -> None:
        """Pause every active session."""
        if self._state != EngineState.RUNNING:
            return

        await asyncio.gather(
            *(session.pause() for session in self._sessions),
            return_exceptions=True,
        )
        self._state = EngineState.PAUSED
        self._paused_reason = reason
        logger.info(f"Orchestrator paused{f': {reason}' if reason else ''}")
        self._events.emit(EventType.PAUSED, reason=reason)

    async def resume(self) -> None:
        if self._state != EngineState.PAUSED:
            return

        await asyncio.gather(
            *(session.resume() for session in self._sessions),
            return_exceptions=True,
        )
        self._state = EngineState.RUNNING
        self._paused_reason = None
        logger.info("Orchestrator resumed")
        self._events.emit(EventType.RESUMED)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    async def report_status(self) -> WatcherStats:
        """Push aggregate status upstream and publish it on the bus."""
        stats = self.get_stats()

        message = StatusMessage(
            agent_id=self.uplink.agent_id,
            state=stats.state.value,
            active_streams=stats.active_streams,
            total_frames_captured=stats.total_frames_captured,
            total_observations_sent=stats.total_observations_sent,
            errors_count=stats.errors_count,
            uptime=stats.uptime_seconds,
        )
        await self.uplink.send_status(message)

        if stats.active_streams < self.settings.streams.max_concurrent:
            logger.warning(
                f"Running {stats.active_streams}/{self.settings.streams.max_concurrent} streams"
            )
        logger.debug(
            f"Status: {stats.active_streams} streams, "
            f"{stats.total_frames_captured} frames, "
            f"{stats.total_observations_sent} observations sent"
        )
        self._events.emit(EventType.STATUS, **message.to_wire())
        return stats

    def get_stats(self) -> WatcherStats:
        """Point-in-time snapshot. Never awaits."""
        streams = [session.get_stats() for session in self._sessions]
        metrics = self.uplink.metrics
        uptime = time.time() - self._started_at if self._started_at else 0.0

        return WatcherStats(
            state=self._state,
            streams=streams,
            active_streams=len(streams),
            uplink_connected=self.uplink.is_connected,
            total_frames_captured=self._retired_frames_captured
            + sum(s.frames_captured for s in self._sessions),
            total_frames_analyzed=self._retired_frames_analyzed
            + sum(s.frames_analyzed for s in self._sessions),
            total_observations_sent=metrics.observations_sent,
            observations_dropped=metrics.observations_dropped,
            queued_observations=self.uplink.queue_size,
            rotations=self._rotations,
            session_failures=self._session_failures,
            errors_count=self._retired_errors
            + sum(s.errors_count for s in self._sessions)
            + metrics.send_failures,
            uplink_reconnects=metrics.reconnect_count,
            started_at=self._started_at,
            uptime_seconds=uptime,
            paused_reason=self._paused_reason,
        )
