"""
Stream Session Tests
====================

Capture loop, frame numbering, stall detection and escalation.
"""

import asyncio

import pytest

from conftest import FakeTransportFactory, SlowMockBrowser, wait_until
from watcher_agent.browser.mock import MockBrowserSession
from watcher_agent.engine.analysis import FrameAnalysis
from watcher_agent.engine.stream_session import StallDetector, StreamSession
from watcher_agent.errors import NavigationError
from watcher_agent.events import EventBus, EventType
from watcher_agent.models.status import StreamState
from watcher_agent.uplink.channel import UplinkChannel


class RecordingUplink(UplinkChannel):
    """Uplink that keeps submitted observations instead of sending them."""

    def __init__(self, config):
        super().__init__(config, "2.0.0", transport_factory=FakeTransportFactory())
        self.submitted = []

    async def send_observation(self, observation):
        self.submitted.append(observation)


class StubAnalyzer:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.contexts = []

    async def analyze(self, frame, context):
        self.contexts.append(context)
        if self.fail:
            raise RuntimeError("vision backend unavailable")
        return FrameAnalysis(
            description="two cars side by side",
            detections=[{"label": "car", "confidence": 0.9}],
            insights=[{"type": "overtake", "content": "Overtake into turn 1"}],
        )


class TestStallDetector:

    def test_three_identical_readings_stall(self):
        detector = StallDetector(threshold=3)
        assert detector.observe(5.0) is False
        assert detector.observe(5.0) is False
        assert detector.observe(5.0) is True
        assert detector.observe(6.0) is False
        assert detector.run_length == 1

    def test_reset_clears_run(self):
        detector = StallDetector(threshold=2)
        detector.observe(1.0)
        detector.reset()
        assert detector.observe(1.0) is False


class TestStreamSession:

    def test_frame_ids_are_gap_free(self, brain_config, capture_config, sources):
        async def scenario():
            uplink = RecordingUplink(brain_config)
            session = StreamSession(sources[0], MockBrowserSession(width=320, height=240), uplink, capture_config)
            await session.start()
            await wait_until(lambda: len(uplink.submitted) >= 5)
            await session.stop()

            ids = [obs.frame_id for obs in uplink.submitted]
            assert ids == list(range(1, len(ids) + 1))
            assert session.frames_captured == len(ids)
            first = uplink.submitted[0]
            assert (first.frame_width, first.frame_height) == (320, 240)
            assert first.category == "A"
            assert first.video_id == "alpha"
            assert first.stream_id == session.stream_id

        asyncio.run(scenario())

    def test_stall_after_three_identical_readings_then_recovers(
        self, brain_config, capture_config, sources
    ):
        async def scenario():
            bus = EventBus()
            events = bus.subscribe()
            uplink = RecordingUplink(brain_config)
            browser = MockBrowserSession(positions=[5.0, 5.0, 5.0, 6.0])
            session = StreamSession(sources[0], browser, uplink, capture_config, events=bus)

            await session.start()
            await wait_until(lambda: session.frames_captured >= 4)
            await session.stop()

            transitions = [
                e.payload["state"] for e in events.drain()
                if e.type == EventType.STREAM_STATE_CHANGED
            ]
            assert transitions[:3] == ["playing", "stalled", "playing"]

        asyncio.run(scenario())

    def test_long_stall_escalates_to_error(self, brain_config, capture_config, sources):
        async def scenario():
            capture = capture_config.model_copy(update={"max_stalled_ticks": 2})
            uplink = RecordingUplink(brain_config)
            browser = MockBrowserSession(positions=[7.0])
            session = StreamSession(sources[0], browser, uplink, capture)

            await session.start()
            await wait_until(lambda: session.state == StreamState.ERROR)
            assert "stalled" in session.error_message
            await session.stop()
            assert session.state == StreamState.STOPPED

        asyncio.run(scenario())

    def test_repeated_tick_failures_escalate_to_error(self, brain_config, capture_config, sources):
        async def scenario():
            bus = EventBus()
            events = bus.subscribe()
            uplink = RecordingUplink(brain_config)
            browser = MockBrowserSession()
            session = StreamSession(sources[0], browser, uplink, capture_config, events=bus)

            await session.start()
            browser.closed = True
            await wait_until(lambda: session.state == StreamState.ERROR)

            assert session.errors_count == capture_config.max_consecutive_failures
            failed = [e for e in events.drain() if e.type == EventType.STREAM_FAILED]
            assert len(failed) == 1
            await session.stop()

        asyncio.run(scenario())

    def test_navigation_failure_raises_and_releases_browser(
        self, brain_config, capture_config, sources
    ):
        async def scenario():
            uplink = RecordingUplink(brain_config)
            browser = MockBrowserSession(fail_navigation=True)
            session = StreamSession(sources[0], browser, uplink, capture_config)

            with pytest.raises(NavigationError):
                await session.start()

            assert session.state == StreamState.ERROR
            assert browser.closed

        asyncio.run(scenario())

    def test_pause_suspends_submissions(self, brain_config, capture_config, sources):
        async def scenario():
            uplink = RecordingUplink(brain_config)
            browser = MockBrowserSession()
            session = StreamSession(sources[0], browser, uplink, capture_config)

            await session.start()
            await wait_until(lambda: len(uplink.submitted) >= 2)
            await session.pause()
            count = len(uplink.submitted)
            await asyncio.sleep(0.2)
            assert len(uplink.submitted) == count
            assert browser.paused

            await session.resume()
            await wait_until(lambda: len(uplink.submitted) > count)
            await session.stop()

            ids = [obs.frame_id for obs in uplink.submitted]
            assert ids == list(range(1, len(ids) + 1))

        asyncio.run(scenario())

    def test_stop_is_idempotent(self, brain_config, capture_config, sources):
        async def scenario():
            uplink = RecordingUplink(brain_config)
            browser = MockBrowserSession()
            session = StreamSession(sources[0], browser, uplink, capture_config)

            await session.start()
            await session.stop()
            await session.stop()

            assert session.state == StreamState.STOPPED
            assert browser.calls.count("close") == 1

        asyncio.run(scenario())

    def test_analyzer_receives_every_nth_frame(self, brain_config, capture_config, sources):
        async def scenario():
            bus = EventBus()
            events = bus.subscribe()
            uplink = RecordingUplink(brain_config)
            analyzer = StubAnalyzer()
            session = StreamSession(
                sources[0], MockBrowserSession(), uplink, capture_config,
                events=bus, analyzer=analyzer,
            )

            await session.start()
            await wait_until(lambda: session.frames_analyzed >= 2)
            await session.stop()

            assert all(ctx.frame_id % 2 == 0 for ctx in analyzer.contexts)
            analyzed = [e for e in events.drain() if e.type == EventType.FRAME_ANALYZED]
            assert analyzed[0].payload["insights"][0]["content"] == "Overtake into turn 1"
            assert any(obs.detections for obs in uplink.submitted)

        asyncio.run(scenario())

    def test_analyzer_failure_is_not_fatal(self, brain_config, capture_config, sources):
        async def scenario():
            uplink = RecordingUplink(brain_config)
            analyzer = StubAnalyzer(fail=True)
            session = StreamSession(
                sources[0], MockBrowserSession(), uplink, capture_config, analyzer=analyzer,
            )

            await session.start()
            await wait_until(lambda: len(analyzer.contexts) >= 2)
            assert session.state == StreamState.PLAYING
            assert session.frames_analyzed == 0
            await session.stop()

        asyncio.run(scenario())

    def test_cancelled_stop_still_releases_browser(self, brain_config, capture_config, sources):
        async def scenario():
            uplink = RecordingUplink(brain_config)
            browser = SlowMockBrowser(capture_delay=0.5)
            session = StreamSession(sources[0], browser, uplink, capture_config)

            await session.start()
            stopping = asyncio.create_task(session.stop())
            await asyncio.sleep(0.05)
            stopping.cancel()
            await asyncio.gather(stopping, return_exceptions=True)

            assert browser.closed
            assert session.state == StreamState.STOPPED

            await session.stop()
            assert browser.calls.count("close") == 1

        asyncio.run(scenario())

    def test_cancelled_start_releases_browser(self, brain_config, capture_config, sources):
        async def scenario():
            uplink = RecordingUplink(brain_config)
            browser = SlowMockBrowser(navigate_delay=0.5)
            session = StreamSession(sources[0], browser, uplink, capture_config)

            starting = asyncio.create_task(session.start())
            await asyncio.sleep(0.05)
            starting.cancel()
            with pytest.raises(asyncio.CancelledError):
                await starting

            assert browser.closed
            assert session.state == StreamState.STOPPED

        asyncio.run(scenario())
