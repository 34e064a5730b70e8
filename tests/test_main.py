"""
Runtime Tests
=============

Command handling, watch time crediting and insight capture through the
event bus, plus the FastAPI application wiring.
"""

import asyncio

import pytest

from conftest import FakeTransport, FakeTransportFactory, wait_until
from test_stream_session import StubAnalyzer
from watcher_agent.browser.mock import MockBrowserSession
from watcher_agent.errors import ConnectError
from watcher_agent.main import WatcherRuntime, create_app, create_browser_factory
from watcher_agent.models.status import EngineState


def build_runtime(settings, transports=None, analyzer=None):
    factory = FakeTransportFactory(transports)
    runtime = WatcherRuntime(
        settings,
        browser_factory=MockBrowserSession,
        transport_factory=factory,
        analyzer=analyzer,
    )
    return runtime, factory


class TestBrowserFactory:

    def test_mock_backend(self, settings):
        factory = create_browser_factory(settings)
        browser = factory()
        assert isinstance(browser, MockBrowserSession)
        assert browser.width == settings.browser.viewport.width

    def test_unknown_backend(self, settings):
        browser = settings.browser.model_copy(update={"backend": "netscape"})
        with pytest.raises(ValueError):
            create_browser_factory(settings.model_copy(update={"browser": browser}))


class TestCommands:

    def test_brain_commands_drive_the_orchestrator(self, settings):
        async def scenario():
            runtime, factory = build_runtime(settings)
            await runtime.start()
            transport = factory.last

            transport.push("watcher:command", {
                "commandId": "c-1", "type": "pause", "payload": {"reason": "operator"},
            })
            await wait_until(lambda: runtime.orchestrator.state == EngineState.PAUSED)
            assert runtime.orchestrator.get_stats().paused_reason == "operator"

            transport.push("watcher:command", {"commandId": "c-2", "type": "resume"})
            await wait_until(lambda: runtime.orchestrator.state == EngineState.RUNNING)

            transport.push("watcher:command", {"commandId": "c-3", "type": "status"})
            await wait_until(lambda: len(transport.events("watcher:status")) >= 1)

            await runtime.stop()
            assert runtime.commands_handled == 3

        asyncio.run(scenario())

    def test_rotate_and_unknown_commands(self, settings):
        async def scenario():
            runtime, _ = build_runtime(settings)
            await runtime.start()

            await runtime.handle_command({"type": "rotate"})
            assert runtime.orchestrator.get_stats().rotations == 1

            await runtime.handle_command({"type": "self_destruct", "payload": "now"})
            assert runtime.orchestrator.state == EngineState.RUNNING
            assert runtime.commands_handled == 2

            await runtime.stop()

        asyncio.run(scenario())

    def test_pause_with_non_dict_payload(self, settings):
        async def scenario():
            runtime, _ = build_runtime(settings)
            await runtime.start()

            await runtime.handle_command({"type": "pause", "payload": ["odd"]})
            assert runtime.orchestrator.state == EngineState.PAUSED
            assert runtime.orchestrator.get_stats().paused_reason is None

            await runtime.stop()

        asyncio.run(scenario())


class TestInsights:

    def test_retired_streams_credit_watch_time(self, settings):
        async def scenario():
            runtime, _ = build_runtime(settings)
            await runtime.start()
            await asyncio.sleep(0.05)
            await runtime.stop()
            return runtime

        runtime = asyncio.run(scenario())
        categories = runtime.insights.get_stats()["categoryStats"]
        assert set(categories) == {"B", "D"}
        assert all(c["hoursWatched"] > 0 for c in categories.values())
        assert runtime.insights.path.exists()

    def test_analysis_results_become_insights(self, settings):
        async def scenario():
            runtime, _ = build_runtime(settings, analyzer=StubAnalyzer())
            await runtime.start()
            await wait_until(lambda: len(runtime.insights.insights) >= 1)
            await runtime.stop()
            return runtime

        runtime = asyncio.run(scenario())
        insight = runtime.insights.insights[0]
        assert insight.content == "Overtake into turn 1"
        assert insight.type == "overtake"
        assert insight.category in ("B", "D")

    def test_insights_disabled(self, settings):
        disabled = settings.insights.model_copy(update={"enabled": False})
        runtime = WatcherRuntime(
            settings.model_copy(update={"insights": disabled}),
            browser_factory=MockBrowserSession,
            transport_factory=FakeTransportFactory(),
        )
        assert runtime.insights is None


class TestLifecycle:

    def test_failed_start_cleans_up(self, settings):
        async def scenario():
            runtime, _ = build_runtime(settings, transports=[FakeTransport(fail_connect=True)])
            with pytest.raises(ConnectError):
                await runtime.start()

            assert not runtime.is_ready()
            assert runtime.orchestrator.state == EngineState.STOPPED

        asyncio.run(scenario())

    def test_health_and_readiness(self, settings):
        async def scenario():
            runtime, _ = build_runtime(settings)
            assert not runtime.is_ready()

            await runtime.start()
            assert runtime.is_ready()
            health = runtime.health()
            assert health["state"] == "running"
            assert health["active_streams"] == 2
            assert [s["source"] for s in health["streams"]] == ["Bravo", "Delta"]

            await runtime.stop()
            assert not runtime.is_ready()

        asyncio.run(scenario())


class TestApp:

    def test_routes_registered(self, settings):
        runtime, _ = build_runtime(settings)
        app = create_app(settings, runtime=runtime)

        paths = {route.path for route in app.routes}
        assert {"/", "/health", "/ready", "/stats", "/ws/stats"} <= paths
        assert app.state.runtime is runtime
