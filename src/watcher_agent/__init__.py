"""
Watcher Agent
=============

Stream watcher that captures observations from rotating video sources and
forwards them to the Brain over a reliable uplink.

Components:
    - engine: Orchestrator, stream sessions and source rotation
    - uplink: Authenticated, batched, reconnecting channel to the Brain
    - browser: Embedded browser backends (Playwright, mock)
    - insights: Knowledge file of analysis results
    - events: Typed event bus

Example:
    from watcher_agent.config import load_config
    from watcher_agent.main import create_app

    app = create_app(load_config("config.yaml"))
"""

__version__ = "2.0.0"
__author__ = "Watcher Project"

__all__ = [
    "__version__",
]
