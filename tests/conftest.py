"""
Test Configuration
==================

Pytest fixtures and fakes for the watcher agent.

The fakes stand in for the network and the browser so tests run on a
plain event loop via asyncio.run().
"""

import asyncio
import json
from typing import List, Optional

import pytest

from watcher_agent.browser.mock import MockBrowserSession
from watcher_agent.config import BrainConfig, CaptureConfig, Settings
from watcher_agent.errors import ConnectError, SendError, TransportClosed
from watcher_agent.models.source import Source, SourceType


class FakeTransport:
    """
    In-memory transport.

    Answers the auth message automatically unless told otherwise and keeps
    every outgoing message (decoded) in `sent`.
    """

    def __init__(
        self,
        auth_reply: Optional[str] = "success",
        agent_id: str = "brain-assigned-1",
        fail_connect: bool = False,
    ) -> None:
        self.auth_reply = auth_reply
        self.agent_id = agent_id
        self.fail_connect = fail_connect
        self.sent: List[dict] = []
        self.fail_sends: int = 0
        self.closed = False
        self._open = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    @property
    def is_open(self) -> bool:
        return self._open

    async def connect(self) -> None:
        if self.fail_connect:
            raise ConnectError("connection refused")
        self._open = True

    async def send(self, message: str) -> None:
        if not self._open:
            raise SendError("not open")
        if self.fail_sends > 0:
            self.fail_sends -= 1
            raise SendError("simulated send failure")

        decoded = json.loads(message)
        self.sent.append(decoded)

        if decoded["event"] == "watcher:auth":
            if self.auth_reply == "success":
                self.push("watcher:auth_success", {"agentId": self.agent_id})
            elif self.auth_reply == "error":
                self.push("watcher:auth_error", {"error": "invalid api key", "code": "AUTH_FAILED"})

    async def recv(self) -> str:
        item = await self._inbox.get()
        if item is None:
            raise TransportClosed("peer went away")
        return item

    async def close(self) -> None:
        self._open = False
        self.closed = True

    def push(self, event: str, data: dict) -> None:
        self._inbox.put_nowait(json.dumps({"event": event, "data": data}))

    def push_raw(self, raw: str) -> None:
        self._inbox.put_nowait(raw)

    def drop(self) -> None:
        """Simulate the Brain closing the connection."""
        self._open = False
        self._inbox.put_nowait(None)

    def events(self, name: str) -> List[dict]:
        return [m["data"] for m in self.sent if m["event"] == name]


class FakeTransportFactory:
    """
    Hands out transports in order.

    `script` holds prebuilt transports for successive connections; once
    it runs out, fresh auto-authenticating transports are created.
    """

    def __init__(self, script: Optional[List[FakeTransport]] = None) -> None:
        self.script = list(script or [])
        self.created: List[FakeTransport] = []

    def __call__(self) -> FakeTransport:
        transport = self.script.pop(0) if self.script else FakeTransport()
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


class SlowMockBrowser(MockBrowserSession):
    """Mock browser whose frame captures (and optionally navigation) take a while."""

    def __init__(self, capture_delay: float = 0.5, navigate_delay: float = 0.0, **kwargs) -> None:
        super().__init__(**kwargs)
        self.capture_delay = capture_delay
        self.navigate_delay = navigate_delay

    async def navigate_to_source(self, source):
        await asyncio.sleep(self.navigate_delay)
        await super().navigate_to_source(source)

    async def capture_frame(self):
        await asyncio.sleep(self.capture_delay)
        return await super().capture_frame()


class RecordingSleep:
    """Replacement for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def brain_config():
    """Brain settings with short timers for tests."""
    return BrainConfig(
        endpoint="ws://brain.test/ws/watcher",
        api_key="test-key",
        auth_timeout_seconds=0.2,
        reconnect_interval_ms=1000,
        max_reconnect_attempts=3,
        batch_interval_ms=50,
        batch_max_size=5,
    )


@pytest.fixture
def capture_config():
    """Fast capture settings."""
    return CaptureConfig(
        fps=20,
        stall_threshold_ticks=3,
        max_stalled_ticks=50,
        max_consecutive_failures=3,
        analyze_every_nth_frame=2,
    )


@pytest.fixture
def sources():
    return [
        Source(name="Alpha", url="https://videos.test/watch/alpha", priority=3, category="A"),
        Source(name="Bravo", url="https://videos.test/watch/bravo", priority=1, category="B"),
        Source(name="Charlie", url="https://videos.test/@charlie/videos",
               type=SourceType.CHANNEL, priority=2, category="C"),
        Source(name="Delta", url="https://videos.test/watch/delta", priority=1, category="D"),
    ]


@pytest.fixture
def settings(brain_config, capture_config, sources, tmp_path):
    """Full settings wired for the mock browser."""
    return Settings.model_validate({
        "brain": brain_config.model_dump(),
        "capture": capture_config.model_dump(),
        "browser": {"backend": "mock", "call_timeout_seconds": 1.0},
        "streams": {
            "sources": [s.model_dump() for s in sources],
            "max_concurrent": 2,
            "rotation": {"enabled": False, "mode": "priority"},
        },
        "insights": {"data_dir": str(tmp_path / "data"), "save_interval_seconds": 60},
    })
