"""
Error Types
===========

Exceptions raised by the watcher agent.

Propagation Rules:
    - ConnectError / AuthError: raised from UplinkChannel.connect() and
      Orchestrator.start(). Fatal to startup, never retried automatically.
    - NavigationError / CaptureError: raised by browser sessions. Logged per
      tick; the session keeps running unless failures keep repeating.
    - SendError: a flush failed. The batch goes back to the front of the
      queue; never surfaced as fatal.
    - MaxReconnectExceeded: attached to the terminal reconnect event.

An auth acknowledgement timeout is not an error. The uplink treats it as
authenticated and carries on.
"""

from typing import Optional


class WatcherError(Exception):
    """Base class for all watcher agent errors."""
    pass


class ConnectError(WatcherError):
    """Raised when the uplink transport cannot be opened."""
    pass


class AuthError(WatcherError):
    """Raised when the Brain explicitly rejects authentication."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class NavigationError(WatcherError):
    """Raised when a source page cannot be loaded or has no playable video."""
    pass


class CaptureError(WatcherError):
    """Raised when a frame or the player state cannot be read."""
    pass


class SendError(WatcherError):
    """Raised when a batch cannot be transmitted."""
    pass


class MaxReconnectExceeded(WatcherError):
    """Reconnection gave up after the configured number of attempts."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Gave up after {attempts} reconnection attempts")
        self.attempts = attempts


class TransportClosed(WatcherError):
    """The uplink transport closed underneath a receive or send."""
    pass
