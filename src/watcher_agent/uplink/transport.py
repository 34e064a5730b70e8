"""
Uplink Transport
================

Message transport between the uplink channel and the Brain.

The channel only needs to open a connection, send and receive text frames,
and close. WebSocketTransport implements this on top of the `websockets`
client; tests substitute an in-memory fake with the same methods.

Design Rules:
    - connect() raises ConnectError, never a library exception
    - recv() raises TransportClosed once the peer goes away
    - send() raises SendError so a flush can requeue its batch
"""

import asyncio
import logging
from typing import Callable, Optional, Protocol

import websockets
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedOK,
    InvalidHandshake,
    InvalidURI,
)

from watcher_agent.errors import ConnectError, SendError, TransportClosed


logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Protocol for uplink transports."""

    @property
    def is_open(self) -> bool:
        ...

    async def connect(self) -> None:
        ...

    async def send(self, message: str) -> None:
        ...

    async def recv(self) -> str:
        ...

    async def close(self) -> None:
        ...


TransportFactory = Callable[[], Transport]


class WebSocketTransport:
    """
    WebSocket client transport.

    Attributes:
        url: WebSocket URL of the Brain
        open_timeout: Seconds allowed for the opening handshake
    """

    def __init__(self, url: str, open_timeout: float = 10.0) -> None:
        self.url = url
        self.open_timeout = open_timeout
        self._websocket = None

    @property
    def is_open(self) -> bool:
        return self._websocket is not None

    async def connect(self) -> None:
        try:
            self._websocket = await websockets.connect(
                self.url,
                open_timeout=self.open_timeout,
                ping_interval=20,
                ping_timeout=10,
                close_timeout=5,
            )
        except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as e:
            raise ConnectError(f"Failed to connect to {self.url}: {e}") from e
        logger.info(f"WebSocket connected: {self.url}")

    async def send(self, message: str) -> None:
        if self._websocket is None:
            raise SendError("Transport is not connected")
        try:
            await self._websocket.send(message)
        except ConnectionClosed as e:
            raise SendError(f"Connection closed during send: {e}") from e

    async def recv(self) -> str:
        if self._websocket is None:
            raise TransportClosed("Transport is not connected")
        try:
            message = await self._websocket.recv()
        except ConnectionClosedOK as e:
            raise TransportClosed(f"Connection closed normally: {e}") from e
        except ConnectionClosed as e:
            raise TransportClosed(f"Connection closed with error: {e}") from e
        if isinstance(message, bytes):
            # Undecodable bytes become an invalid frame, not a dead reader
            return message.decode("utf-8", errors="replace")
        return message

    async def close(self) -> None:
        websocket: Optional[object] = self._websocket
        self._websocket = None
        if websocket is not None:
            try:
                await websocket.close()
            except ConnectionClosed:
                pass
