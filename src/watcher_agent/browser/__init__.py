"""
Browser Module
==============

Embedded browser backends that render a source and expose its player.

Components:
    - BrowserSession: Protocol every backend implements
    - PlaybackState: Player state snapshot
    - MockBrowserSession: Deterministic scripted backend
    - PlaywrightBrowserSession: Headless Chromium (imported from
      watcher_agent.browser.playwright_session so Playwright is only
      loaded when selected)

Design Philosophy:
    Stream sessions treat the browser as a black box. They never run
    page scripts themselves; they only call the contract methods.
"""

from watcher_agent.browser.session import BrowserFactory, BrowserSession, PlaybackState
from watcher_agent.browser.mock import MockBrowserSession
from watcher_agent.browser.frames import frame_dimensions

__all__ = [
    "BrowserSession",
    "BrowserFactory",
    "PlaybackState",
    "MockBrowserSession",
    "frame_dimensions",
]
