"""
Watcher Agent Main Application
==============================

FastAPI entry point for the stream watcher agent.

The orchestrator runs inside the application lifespan. Everything is built
from one Settings value loaded at process start.

Endpoints:
    GET  /          - Service information
    GET  /health    - Liveness probe with per-stream summary
    GET  /ready     - Readiness probe (running + uplink connected?)
    GET  /stats     - Full watcher stats plus insight stats
    WS   /ws/stats  - Watcher stats pushed every second

Brain Commands:
    pause   - Pause every stream (payload.reason optional)
    resume  - Resume every stream
    rotate  - Rotate the oldest stream now
    status  - Push a status report now
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, WebSocket
from fastapi.responses import JSONResponse

from watcher_agent import __version__
from watcher_agent.browser import BrowserFactory, MockBrowserSession
from watcher_agent.config import Settings, load_config, setup_logging
from watcher_agent.engine import FrameAnalyzer, Orchestrator
from watcher_agent.events import EventBus, EventType, WatcherEvent
from watcher_agent.insights import Insight, InsightSource, InsightStore
from watcher_agent.models.status import EngineState
from watcher_agent.uplink import TransportFactory, UplinkChannel


logger = logging.getLogger(__name__)


# =============================================================================
# Browser Backend Factory
# =============================================================================

def create_browser_factory(settings: Settings) -> BrowserFactory:
    """
    Create the browser factory selected by browser.backend.

    Playwright is only imported when the playwright backend is selected.
    """
    backend = settings.browser.backend

    if backend == "mock":
        logger.info("Using MockBrowserSession")
        viewport = settings.browser.viewport
        return lambda: MockBrowserSession(
            width=viewport.width,
            height=viewport.height,
            quality=settings.capture.quality,
        )

    elif backend == "playwright":
        from watcher_agent.browser.playwright_session import PlaywrightBrowserSession

        logger.info(
            f"Using PlaywrightBrowserSession: headless={settings.browser.headless}"
        )
        return lambda: PlaywrightBrowserSession(settings.browser, settings.capture)

    else:
        raise ValueError(f"Unknown browser backend: {backend}")


# =============================================================================
# Runtime
# =============================================================================

class WatcherRuntime:
    """
    All long-lived components of one agent process.

    Besides owning the orchestrator, the runtime consumes the event bus:
    it interprets Brain commands, credits watch time of retired streams
    and stores insights produced by frame analysis.
    """

    def __init__(
        self,
        settings: Settings,
        browser_factory: Optional[BrowserFactory] = None,
        transport_factory: Optional[TransportFactory] = None,
        analyzer: Optional[FrameAnalyzer] = None,
    ) -> None:
        self.settings = settings
        self.events = EventBus()
        self.uplink = UplinkChannel(
            settings.brain,
            version=settings.agent.version,
            transport_factory=transport_factory,
            events=self.events,
        )
        self.insights: Optional[InsightStore] = (
            InsightStore(settings.insights) if settings.insights.enabled else None
        )
        self.orchestrator = Orchestrator(
            settings,
            self.uplink,
            browser_factory or create_browser_factory(settings),
            events=self.events,
            analyzer=analyzer,
        )

        self.started_at: float = time.time()
        self.commands_handled: int = 0
        self._subscription = self.events.subscribe()
        self._event_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """
        Start the insight store, event handling and the orchestrator.

        Raises:
            ConnectError / AuthError: Uplink could not be established
        """
        self.started_at = time.time()
        logger.info(f"Starting {self.settings.agent.name} {self.settings.agent.version}")

        if self.insights is not None:
            self.insights.load()
            self.insights.start_autosave()

        self._event_task = asyncio.create_task(
            self._event_loop(),
            name="event_dispatcher",
        )

        try:
            await self.orchestrator.start()
        except Exception:
            await self.stop()
            raise

    async def stop(self) -> None:
        logger.info("Shutting down gracefully...")

        await self.orchestrator.stop()

        # Handle what the shutdown itself published (retirements)
        for event in self._subscription.drain():
            await self.handle_event(event)

        if self._event_task is not None:
            self._event_task.cancel()
            await asyncio.gather(self._event_task, return_exceptions=True)
            self._event_task = None
        self._subscription.close()

        if self.insights is not None:
            await self.insights.shutdown()

        logger.info("Shutdown complete")

    async def _event_loop(self) -> None:
        async for event in self._subscription:
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.error(f"Error handling {event.type.value} event: {e}")

    async def handle_event(self, event: WatcherEvent) -> None:
        """Route one bus event to its handler."""
        if event.type == EventType.COMMAND:
            await self.handle_command(event.payload)
        elif event.type == EventType.STREAM_RETIRED:
            self._credit_watch_time(event.payload)
        elif event.type == EventType.FRAME_ANALYZED:
            self._store_insights(event.payload)
        elif event.type == EventType.RECONNECT_FAILED:
            logger.critical(
                f"Uplink gave up: {event.payload.get('error')}. "
                f"Streams keep running; observations are held locally."
            )

    async def handle_command(self, command: dict) -> None:
        """Execute a command received from the Brain."""
        command_type = command.get("type")
        payload = command.get("payload")
        self.commands_handled += 1

        if command_type == "pause":
            reason = payload.get("reason") if isinstance(payload, dict) else None
            await self.orchestrator.pause(reason)
        elif command_type == "resume":
            await self.orchestrator.resume()
        elif command_type == "rotate":
            await self.orchestrator.rotate()
        elif command_type == "status":
            await self.orchestrator.report_status()
        else:
            logger.warning(f"Unknown command type: {command_type}")

    def _credit_watch_time(self, payload: dict) -> None:
        if self.insights is None:
            return
        hours = float(payload.get("watch_seconds", 0.0)) / 3600.0
        self.insights.update_watch_time(payload.get("category", "unknown"), hours)

    def _store_insights(self, payload: dict) -> None:
        if self.insights is None:
            return

        source = InsightSource(
            video_id=payload.get("video_id", ""),
            video_title=payload.get("video_title", ""),
            frame_time=payload.get("current_time", 0.0),
        )
        for raw in payload.get("insights", []):
            content = raw.get("content")
            if not content:
                continue
            self.insights.add_insight(Insight(
                category=raw.get("category") or payload.get("category", "general"),
                source=source,
                type=raw.get("type", "observation"),
                content=content,
                confidence=raw.get("confidence", 0.5),
                tags=list(raw.get("tags", [])),
            ))

    def health(self) -> dict:
        stats = self.orchestrator.get_stats()
        return {
            "status": "healthy",
            "state": stats.state.value,
            "uptime_seconds": round(time.time() - self.started_at, 1),
            "uplink_connected": stats.uplink_connected,
            "active_streams": stats.active_streams,
            "streams": [
                {
                    "stream_id": s.stream_id,
                    "source": s.source.name,
                    "state": s.state.value,
                    "frames_captured": s.frames_captured,
                }
                for s in stats.streams
            ],
        }

    def is_ready(self) -> bool:
        return (
            self.orchestrator.state in (EngineState.RUNNING, EngineState.PAUSED)
            and self.uplink.is_connected
        )


# =============================================================================
# FastAPI Application
# =============================================================================

def create_app(
    settings: Settings,
    runtime: Optional[WatcherRuntime] = None,
) -> FastAPI:
    """
    Build the FastAPI application around a watcher runtime.

    Args:
        settings: Loaded settings
        runtime: Prebuilt runtime (defaults to one built from settings)
    """
    runtime = runtime or WatcherRuntime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await runtime.start()
        yield
        await runtime.stop()

    app = FastAPI(
        title="Watcher Agent",
        description="Stream watcher with reliable uplink to the Brain",
        version=settings.agent.version,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    @app.get("/")
    async def root() -> JSONResponse:
        """Service information endpoint."""
        return JSONResponse({
            "service": "watcher-agent",
            "name": settings.agent.name,
            "version": settings.agent.version,
            "agent_id": runtime.uplink.agent_id,
            "browser_backend": settings.browser.backend,
            "max_streams": settings.streams.max_concurrent,
        })

    @app.get("/health")
    async def health() -> JSONResponse:
        """
        Liveness probe - is the process alive?

        Always returns 200 while the service is running.
        """
        return JSONResponse(runtime.health())

    @app.get("/ready")
    async def ready() -> JSONResponse:
        """
        Readiness probe.

        Returns 200 when the orchestrator runs with the uplink connected,
        503 otherwise.
        """
        body = {
            "state": runtime.orchestrator.state.value,
            "uplink_connected": runtime.uplink.is_connected,
        }
        if runtime.is_ready():
            return JSONResponse({"status": "ready", **body})
        return JSONResponse({"status": "not_ready", **body}, status_code=503)

    @app.get("/stats")
    async def stats() -> JSONResponse:
        """Detailed stats for observability."""
        body = runtime.orchestrator.get_stats().model_dump(mode="json")
        body["uplink"] = runtime.uplink.stats()
        body["commands_handled"] = runtime.commands_handled
        if runtime.insights is not None:
            body["insights"] = runtime.insights.get_stats()
        return JSONResponse(body)

    @app.websocket("/ws/stats")
    async def stats_stream(websocket: WebSocket) -> None:
        """WebSocket endpoint for live stats."""
        await websocket.accept()
        logger.info("Client connected to /ws/stats")

        try:
            while runtime.orchestrator.state != EngineState.STOPPED:
                await websocket.send_json(
                    runtime.orchestrator.get_stats().model_dump(mode="json")
                )
                await asyncio.sleep(1.0)
        except Exception as e:
            logger.warning(f"WebSocket error: {e}")
        finally:
            logger.info("Client disconnected from /ws/stats")

    return app


# =============================================================================
# Main Entry Point
# =============================================================================

def main() -> None:
    import uvicorn

    settings = load_config()
    setup_logging(settings)
    logger.info(f"watcher-agent {__version__}")

    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
