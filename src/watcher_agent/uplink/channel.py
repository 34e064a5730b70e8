"""
Uplink Channel
==============

Authenticated, batched, acknowledged delivery of observations to the Brain.

This module provides the UplinkChannel class which:
    - Opens the transport and authenticates as a watcher agent
    - Queues observations and ships them as batches
    - Requeues a batch at the front of the queue when sending fails
    - Reconnects with linear backoff after an unexpected disconnect
    - Resends unacknowledged batches verbatim after a reconnect
    - Publishes acks, rejections and inbound commands on the event bus

Flush Triggers (whichever comes first):
    - The batch timer fires (batch_interval_ms after the first enqueue
      with no timer pending)
    - The queue reaches batch_max_size

Design Rules:
    - Batches leave in flush order within one connection
    - Disconnected flushes are skipped; the queue is kept intact
    - The queue is capped at max_queue_size; overflow drops the oldest
      observations and every drop is logged and counted
    - Status pushes are fire-and-forget
"""

import asyncio
import logging
import time
from collections import OrderedDict, deque
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set

from pydantic import ValidationError

from watcher_agent.config import BrainConfig
from watcher_agent.errors import (
    AuthError,
    ConnectError,
    MaxReconnectExceeded,
    SendError,
    TransportClosed,
)
from watcher_agent.events import EventBus, EventType
from watcher_agent.models.messages import (
    EVENT_AUTH,
    EVENT_AUTH_ERROR,
    EVENT_AUTH_SUCCESS,
    EVENT_COMMAND,
    EVENT_OBSERVATIONS,
    EVENT_OBSERVATIONS_ACK,
    EVENT_OBSERVATIONS_ERROR,
    EVENT_STATUS,
    AuthMessage,
    AuthRejection,
    AuthSuccess,
    Command,
    ObservationsAck,
    ObservationsRejection,
    StatusMessage,
    decode_message,
    encode_message,
)
from watcher_agent.models.observation import Observation, ObservationBatch, StreamInfo
from watcher_agent.models.source import Source
from watcher_agent.uplink.transport import Transport, TransportFactory, WebSocketTransport


logger = logging.getLogger(__name__)


class UplinkMetrics:
    """Metrics for UplinkChannel observability."""

    __slots__ = (
        "batches_sent",
        "observations_sent",
        "observations_dropped",
        "send_failures",
        "reconnect_count",
        "acks_received",
        "batches_rejected",
        "batches_resent",
        "commands_received",
        "last_ack_batch_id",
    )

    def __init__(self) -> None:
        self.batches_sent: int = 0
        self.observations_sent: int = 0
        self.observations_dropped: int = 0
        self.send_failures: int = 0
        self.reconnect_count: int = 0
        self.acks_received: int = 0
        self.batches_rejected: int = 0
        self.batches_resent: int = 0
        self.commands_received: int = 0
        self.last_ack_batch_id: Optional[str] = None

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {name: getattr(self, name) for name in self.__slots__}


class UplinkChannel:
    """
    One logical connection to the Brain.

    Attributes:
        config: Brain connection settings
        version: Agent version sent during authentication
        metrics: Operational metrics

    Example:
        uplink = UplinkChannel(settings.brain, version="2.0.0", events=bus)
        await uplink.connect()

        uplink.register_stream(stream_id, source)
        await uplink.send_observation(observation)

        await uplink.disconnect()
    """

    def __init__(
        self,
        config: BrainConfig,
        version: str,
        transport_factory: Optional[TransportFactory] = None,
        events: Optional[EventBus] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize uplink channel.

        Args:
            config: Brain endpoint, credentials, batching and retry settings
            version: Agent version reported in the auth message
            transport_factory: Builds a fresh transport per connection
                (defaults to a WebSocket transport on config.endpoint)
            events: Bus for connection, ack and command events
            sleep: Awaitable used for reconnect backoff delays
            clock: Wall clock used for identifiers
        """
        self.config = config
        self.version = version
        self._transport_factory = transport_factory or (
            lambda: WebSocketTransport(config.endpoint)
        )
        self._events = events if events is not None else EventBus()
        self._sleep = sleep
        self._clock = clock

        # Connection state
        self._transport: Optional[Transport] = None
        self._connected: bool = False
        self._authenticated: bool = False
        self._closing: bool = False
        self._gave_up: bool = False
        self._agent_id: str = config.agent_id or ""
        self._session_token: Optional[str] = None
        self._auth_waiter: Optional[asyncio.Future] = None

        # Background tasks
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._batch_timer: Optional[asyncio.Task] = None

        # Delivery state
        self._queue: Deque[Observation] = deque()
        self._unacked: "OrderedDict[str, ObservationBatch]" = OrderedDict()
        self._stream_contexts: Dict[str, StreamInfo] = {}
        self._retired_streams: Set[str] = set()
        self._send_lock = asyncio.Lock()
        self._batch_seq: int = 0

        self.metrics = UplinkMetrics()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        """Whether the transport is open and authentication completed."""
        return self._connected and self._authenticated

    @property
    def agent_id(self) -> str:
        return self._agent_id

    @property
    def session_token(self) -> Optional[str]:
        return self._session_token

    @property
    def gave_up(self) -> bool:
        """Whether reconnection was abandoned after a terminal failure."""
        return self._gave_up

    @property
    def queue_size(self) -> int:
        """Observations waiting to be sent."""
        return len(self._queue)

    @property
    def unacked_count(self) -> int:
        """Sent batches still waiting for an acknowledgement."""
        return len(self._unacked)

    @property
    def events(self) -> EventBus:
        return self._events

    def reconnect_delay(self, attempt: int) -> float:
        """Backoff before reconnect attempt n, in seconds (linear)."""
        return self.config.reconnect_interval_ms * attempt / 1000.0

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Open the transport and authenticate.

        An acknowledgement that does not arrive within auth_timeout_seconds
        is treated as success with a locally generated agent ID.

        Raises:
            ConnectError: If the transport cannot be opened
            AuthError: If the Brain explicitly rejects the credentials
        """
        self._closing = False
        self._gave_up = False
        logger.info(f"Connecting to Brain: {self.config.endpoint}")
        await self._open_and_authenticate()

    async def _open_and_authenticate(self) -> None:
        transport = self._transport_factory()
        await transport.connect()

        self._transport = transport
        self._connected = True
        self._authenticated = False
        self._auth_waiter = asyncio.get_running_loop().create_future()
        self._reader_task = asyncio.create_task(
            self._read_loop(transport),
            name="uplink_reader",
        )

        try:
            auth = AuthMessage(
                api_key=self.config.api_key,
                agent_id=self.config.agent_id,
                version=self.version,
            )
            logger.info("Authenticating...")
            await transport.send(encode_message(EVENT_AUTH, auth))

            try:
                agent_id = await asyncio.wait_for(
                    self._auth_waiter,
                    timeout=self.config.auth_timeout_seconds,
                )
                logger.info(f"Authenticated as {agent_id}")
            except asyncio.TimeoutError:
                if not self._agent_id:
                    self._agent_id = f"watcher-{int(self._clock() * 1000)}"
                logger.warning(
                    f"Auth timeout after {self.config.auth_timeout_seconds}s, "
                    f"continuing as {self._agent_id}"
                )
                self._events.emit(EventType.AUTH_TIMEOUT, agent_id=self._agent_id)
        except SendError as e:
            await self._teardown_transport()
            raise ConnectError(f"Failed to send auth message: {e}") from e
        except (AuthError, ConnectError):
            await self._teardown_transport()
            raise
        finally:
            self._auth_waiter = None

        self._authenticated = True

    async def disconnect(self) -> None:
        """
        Flush what can be flushed and close the connection.

        Safe to call multiple times and before connect().
        """
        if self._closing and self._transport is None:
            return
        self._closing = True

        reconnect = self._reconnect_task
        self._reconnect_task = None
        if reconnect is not None and reconnect is not asyncio.current_task():
            reconnect.cancel()
            try:
                await reconnect
            except asyncio.CancelledError:
                pass

        self._cancel_batch_timer()
        if self.is_connected:
            await self.flush()

        await self._teardown_transport()
        logger.info("Disconnected from Brain")

    async def _teardown_transport(self) -> None:
        reader = self._reader_task
        self._reader_task = None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

        transport = self._transport
        self._transport = None
        self._connected = False
        self._authenticated = False

        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.debug(f"Transport close failed: {e}")

    # -------------------------------------------------------------------------
    # Inbound messages
    # -------------------------------------------------------------------------

    async def _read_loop(self, transport: Transport) -> None:
        try:
            while True:
                raw = await transport.recv()
                self._dispatch(raw)
        except TransportClosed as e:
            reason = str(e)
        except Exception as e:
            reason = f"Reader failed: {e}"
            logger.error(reason)

        if transport is self._transport:
            self._on_connection_lost(reason)

    def _dispatch(self, raw: str) -> None:
        envelope = decode_message(raw)
        if envelope is None:
            logger.warning("Ignoring malformed uplink message")
            return

        handlers = {
            EVENT_AUTH_SUCCESS: self._on_auth_success,
            EVENT_AUTH_ERROR: self._on_auth_error,
            EVENT_OBSERVATIONS_ACK: self._on_observations_ack,
            EVENT_OBSERVATIONS_ERROR: self._on_observations_error,
            EVENT_COMMAND: self._on_command,
        }
        handler = handlers.get(envelope.event)
        if handler is None:
            logger.debug(f"Ignoring uplink event: {envelope.event}")
            return

        try:
            handler(envelope.data)
        except ValidationError as e:
            logger.warning(f"Invalid {envelope.event} payload: {e}")

    def _on_auth_success(self, data: dict) -> None:
        message = AuthSuccess.model_validate(data)
        self._agent_id = message.agent_id
        self._session_token = message.session_token

        waiter = self._auth_waiter
        if waiter is not None and not waiter.done():
            waiter.set_result(message.agent_id)
        else:
            logger.info(f"Late auth acknowledgement, agent ID is now {message.agent_id}")
        self._events.emit(EventType.AUTHENTICATED, agent_id=message.agent_id)

    def _on_auth_error(self, data: dict) -> None:
        message = AuthRejection.model_validate(data)
        logger.error(f"Authentication failed: {message.error} ({message.code})")

        waiter = self._auth_waiter
        if waiter is not None and not waiter.done():
            waiter.set_exception(AuthError(message.error, message.code))
        else:
            # Rejected after a soft auth timeout; stop sending until reconnect.
            self._authenticated = False

    def _on_observations_ack(self, data: dict) -> None:
        ack = ObservationsAck.model_validate(data)
        self._unacked.pop(ack.batch_id, None)
        self.metrics.acks_received += 1
        self.metrics.last_ack_batch_id = ack.batch_id
        logger.debug(f"Batch {ack.batch_id}: {ack.received} acknowledged")
        self._events.emit(EventType.BATCH_ACKED, batch_id=ack.batch_id, received=ack.received)

    def _on_observations_error(self, data: dict) -> None:
        rejection = ObservationsRejection.model_validate(data)
        self._unacked.pop(rejection.batch_id, None)
        self.metrics.batches_rejected += 1
        logger.error(f"Batch {rejection.batch_id} rejected: {rejection.error}")
        self._events.emit(
            EventType.BATCH_REJECTED,
            batch_id=rejection.batch_id,
            error=rejection.error,
        )

    def _on_command(self, data: dict) -> None:
        command = Command.model_validate(data)
        self.metrics.commands_received += 1
        logger.info(f"Received command: {command.type} ({command.command_id})")
        self._events.emit(
            EventType.COMMAND,
            command_id=command.command_id,
            type=command.type,
            payload=command.payload,
        )

    # -------------------------------------------------------------------------
    # Reconnection
    # -------------------------------------------------------------------------

    def _on_connection_lost(self, reason: str) -> None:
        self._connected = False
        self._authenticated = False

        waiter = self._auth_waiter
        if waiter is not None and not waiter.done():
            # connect() is still waiting and reports the failure itself.
            waiter.set_exception(ConnectError(f"Connection lost during authentication: {reason}"))
            return

        logger.warning(f"Disconnected: {reason}")
        self._events.emit(EventType.DISCONNECTED, reason=reason)

        if self._closing or self._reconnect_task is not None:
            return
        self._reconnect_task = asyncio.create_task(
            self._reconnect_loop(),
            name="uplink_reconnect",
        )

    async def _reconnect_loop(self) -> None:
        try:
            await self._teardown_transport()
            max_attempts = self.config.max_reconnect_attempts
            attempts = 0

            for attempt in range(1, max_attempts + 1):
                attempts = attempt
                delay = self.reconnect_delay(attempt)
                logger.info(
                    f"Reconnecting in {delay:.1f}s (attempt {attempt}/{max_attempts})"
                )
                self._events.emit(
                    EventType.RECONNECTING,
                    attempt=attempt,
                    delay_seconds=delay,
                )
                await self._sleep(delay)
                if self._closing:
                    return

                try:
                    await self._open_and_authenticate()
                except AuthError as e:
                    logger.error(f"Reconnect rejected by Brain: {e}")
                    break
                except ConnectError as e:
                    logger.warning(f"Reconnect attempt {attempt} failed: {e}")
                    continue

                self.metrics.reconnect_count += 1
                logger.info(f"Reconnected after {attempt} attempt(s)")
                self._events.emit(
                    EventType.RECONNECTED,
                    attempt=attempt,
                    agent_id=self._agent_id,
                )
                await self._resend_unacked()
                await self.flush()
                return

            self._gave_up = True
            error = MaxReconnectExceeded(attempts)
            logger.error(str(error))
            self._events.emit(
                EventType.RECONNECT_FAILED,
                attempts=attempts,
                error=str(error),
            )
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    async def _resend_unacked(self) -> None:
        if not self._unacked:
            return

        pending = list(self._unacked.values())
        logger.info(f"Resending {len(pending)} unacknowledged batches")
        async with self._send_lock:
            for batch in pending:
                if self._transport is None:
                    break
                try:
                    await self._transport.send(encode_message(EVENT_OBSERVATIONS, batch))
                except Exception as e:
                    logger.warning(f"Resend of batch {batch.batch_id} failed: {e}")
                    break
                self.metrics.batches_resent += 1

    # -------------------------------------------------------------------------
    # Outbound observations
    # -------------------------------------------------------------------------

    def register_stream(self, stream_id: str, source: Source) -> None:
        """Record the source context used to tag batches from a stream."""
        self._stream_contexts[stream_id] = StreamInfo(
            stream_id=stream_id,
            video_title=source.name,
            source_type=source.type.value,
            source_url=source.url,
            category=source.category,
        )
        self._retired_streams.discard(stream_id)

    def unregister_stream(self, stream_id: str) -> None:
        """
        Forget a stream's context.

        Observations of the stream still waiting in the queue keep their
        context until they have been sent.
        """
        if any(obs.stream_id == stream_id for obs in self._queue):
            self._retired_streams.add(stream_id)
        else:
            self._stream_contexts.pop(stream_id, None)

    def _release_retired_streams(self) -> None:
        if not self._retired_streams:
            return
        queued = {obs.stream_id for obs in self._queue}
        for stream_id in list(self._retired_streams):
            if stream_id not in queued:
                self._retired_streams.discard(stream_id)
                self._stream_contexts.pop(stream_id, None)

    async def send_observation(self, observation: Observation) -> None:
        """
        Queue an observation for delivery.

        Flushes immediately once the queue holds a full batch; otherwise
        makes sure the batch timer is running.
        """
        self._queue.append(observation)
        self._enforce_queue_cap()

        if len(self._queue) >= self.config.batch_max_size:
            await self.flush()
        elif self._batch_timer is None and not self._closing:
            self._start_batch_timer()

    def _enforce_queue_cap(self) -> None:
        cap = self.config.max_queue_size
        if cap <= 0 or len(self._queue) <= cap:
            return

        dropped = 0
        while len(self._queue) > cap:
            self._queue.popleft()
            dropped += 1

        self.metrics.observations_dropped += dropped
        logger.warning(
            f"Observation queue full ({cap}), dropped {dropped} oldest. "
            f"Total dropped: {self.metrics.observations_dropped}"
        )
        self._events.emit(
            EventType.OBSERVATIONS_DROPPED,
            dropped=dropped,
            total_dropped=self.metrics.observations_dropped,
        )

    def _start_batch_timer(self) -> None:
        self._batch_timer = asyncio.create_task(
            self._batch_timer_fired(),
            name="uplink_batch_timer",
        )

    async def _batch_timer_fired(self) -> None:
        await asyncio.sleep(self.config.batch_interval_ms / 1000.0)
        self._batch_timer = None
        await self.flush()

    def _cancel_batch_timer(self) -> None:
        timer = self._batch_timer
        self._batch_timer = None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def flush(self) -> int:
        """
        Send queued observations as batches.

        Sends full batches while the queue holds at least batch_max_size
        observations, then one batch of whatever remains.

        Returns:
            Number of observations sent
        """
        self._cancel_batch_timer()
        max_size = self.config.batch_max_size
        sent = 0

        async with self._send_lock:
            while self._queue:
                if not self.is_connected or self._transport is None:
                    logger.debug(f"Not connected, holding {len(self._queue)} observations")
                    break

                count = min(len(self._queue), max_size)
                observations = [self._queue.popleft() for _ in range(count)]
                batch = self._build_batch(observations)

                try:
                    await self._transport.send(encode_message(EVENT_OBSERVATIONS, batch))
                except asyncio.CancelledError:
                    self._queue.extendleft(reversed(observations))
                    raise
                except Exception as e:
                    self._queue.extendleft(reversed(observations))
                    self.metrics.send_failures += 1
                    logger.error(
                        f"Failed to send batch {batch.batch_id}, "
                        f"requeued {count} observations: {e}"
                    )
                    break

                sent += count
                self.metrics.batches_sent += 1
                self.metrics.observations_sent += count
                self._track_unacked(batch)
                self._release_retired_streams()
                logger.debug(f"Sent batch {batch.batch_id} with {count} observations")

                if len(self._queue) < max_size:
                    break

        if (
            self._queue
            and self.is_connected
            and self._batch_timer is None
            and not self._closing
        ):
            self._start_batch_timer()
        return sent

    def _build_batch(self, observations: List[Observation]) -> ObservationBatch:
        self._batch_seq += 1
        first = observations[0]

        context = self._stream_contexts.get(first.stream_id)
        if context is not None:
            stream_info = context.model_copy(update={
                "video_id": first.video_id or context.video_id,
                "video_title": first.video_title or context.video_title,
            })
        else:
            stream_info = StreamInfo(
                stream_id=first.stream_id,
                video_id=first.video_id,
                video_title=first.video_title or "Unknown",
                category=first.category or "unknown",
            )

        return ObservationBatch(
            agent_id=self._agent_id,
            batch_id=f"batch-{int(self._clock() * 1000)}-{self._batch_seq}",
            observations=observations,
            stream_info=stream_info,
        )

    def _track_unacked(self, batch: ObservationBatch) -> None:
        limit = self.config.max_unacked_batches
        if limit <= 0:
            return
        self._unacked[batch.batch_id] = batch
        while len(self._unacked) > limit:
            self._unacked.popitem(last=False)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    async def send_status(self, status: StatusMessage) -> bool:
        """
        Push an aggregate status message.

        Silently skipped while disconnected.

        Returns:
            True if the message was handed to the transport
        """
        if not self.is_connected or self._transport is None:
            return False

        message = status.model_copy(update={"agent_id": self._agent_id})
        async with self._send_lock:
            if self._transport is None:
                return False
            try:
                await self._transport.send(encode_message(EVENT_STATUS, message))
            except Exception as e:
                logger.debug(f"Status push failed: {e}")
                return False
        return True

    def stats(self) -> Dict[str, object]:
        """Connection and delivery metrics for status reporting."""
        return {
            "connected": self.is_connected,
            "agent_id": self._agent_id,
            "queue_size": len(self._queue),
            "unacked_batches": len(self._unacked),
            "gave_up": self._gave_up,
            **self.metrics.to_dict(),
        }
