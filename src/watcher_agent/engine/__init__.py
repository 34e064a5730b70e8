"""
Engine Module
=============

Session pool, per-stream capture and source rotation.

Components:
    - Orchestrator: Keeps max_concurrent sessions running and rotates them
    - StreamSession: Capture loop and state machine for one source
    - SourceQueue: Rotation order with a wrapping cursor
    - FrameAnalyzer: Optional hook for every Nth frame
"""

from watcher_agent.engine.analysis import FrameAnalysis, FrameAnalyzer, FrameContext
from watcher_agent.engine.rotation import SourceQueue, build_queue_order
from watcher_agent.engine.stream_session import StallDetector, StreamSession
from watcher_agent.engine.orchestrator import Orchestrator, STATUS_INTERVAL_SECONDS

__all__ = [
    "Orchestrator",
    "STATUS_INTERVAL_SECONDS",
    "StreamSession",
    "StallDetector",
    "SourceQueue",
    "build_queue_order",
    "FrameAnalyzer",
    "FrameAnalysis",
    "FrameContext",
]
