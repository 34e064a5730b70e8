"""
Uplink Module
=============

Reliable delivery of observations to the Brain.

Components:
    - UplinkChannel: Authenticated, batched, reconnecting connection
    - Transport: Protocol for the underlying message transport
    - WebSocketTransport: `websockets` client implementation
"""

from watcher_agent.uplink.transport import Transport, TransportFactory, WebSocketTransport
from watcher_agent.uplink.channel import UplinkChannel, UplinkMetrics

__all__ = [
    "UplinkChannel",
    "UplinkMetrics",
    "Transport",
    "TransportFactory",
    "WebSocketTransport",
]
