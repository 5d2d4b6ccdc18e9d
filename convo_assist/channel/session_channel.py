"""
Reconnecting WebSocket channel between one client and the session hub.

The channel owns a single logical connection to ``/ws``. It decodes incoming
frames and dispatches them to handlers registered per message type, and it
re-establishes the connection on loss a bounded number of times.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

import websockets

from convo_assist.config.config import DEFAULT_CONFIG, ChannelConfig, channel_config
from convo_assist.errors import MalformedMessage, TransportDisconnected
from convo_assist.events import Disposer, EventEmitter
from convo_assist.protocol import MessageType, decode_frame, encode_frame, known_type
from convo_assist.scheduling import AsyncioScheduler, Scheduler, TimerHandle

logger = logging.getLogger(__name__)

FrameHandler = Callable[[Dict[str, Any]], None]
Connector = Callable[[str], Awaitable[Any]]

# Errors that mean the transport went away rather than a bug in our code
TRANSPORT_ERRORS = (websockets.ConnectionClosed, OSError)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


async def websockets_connector(url: str) -> Any:
    """Open a client connection with the ``websockets`` library."""
    return await websockets.connect(url, ping_interval=20, ping_timeout=20)


class SessionChannel:
    """
    Duplex JSON channel with bounded automatic reconnection.

    States::

        disconnected --connect--> connecting --open--> connected
        connecting|connected --loss--> disconnected (+ reconnect timer)

    After a loss the channel schedules a reconnect ``reconnect_delay_ms``
    later as long as fewer than ``max_reconnect_attempts`` have been made.
    The counter resets on a confirmed open or on an explicit :meth:`connect`.

    ``send`` never queues: it returns False while not connected and callers
    re-send state (e.g. re-join their session) after the next
    ``connection_status {connected: True}``.
    :meth:`transmit` is the raising variant of :meth:`send`.

    Example:
        >>> channel = SessionChannel()
        >>> dispose = channel.subscribe(MessageType.NEW_MESSAGE, print)
        >>> await channel.connect()
        >>> await channel.join_session(42)
    """

    def __init__(
        self,
        config: Optional[ChannelConfig] = None,
        connector: Optional[Connector] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.config = config or channel_config(DEFAULT_CONFIG)
        self._connector = connector or websockets_connector
        self._scheduler = scheduler or AsyncioScheduler()
        self._handlers: EventEmitter[str] = EventEmitter()

        self._state = ConnectionState.DISCONNECTED
        self._ws: Optional[Any] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._reconnect_timer: Optional[TimerHandle] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0
        self._closed = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._ws is not None

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None

    def subscribe(self, message_type: Union[MessageType, str], handler: FrameHandler) -> Disposer:
        """Register ``handler`` for frames of ``message_type``; returns a disposer."""
        return self._handlers.subscribe(_type_value(message_type), handler)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """
        Open the connection, resetting the reconnect budget.

        Returns:
            True if the channel is connected when the call returns
        """
        self._closed = False
        self._reconnect_attempts = 0
        self._cancel_reconnect()
        return await self._open()

    async def close(self) -> None:
        """Disconnect without scheduling any reconnect."""
        self._closed = True
        self._cancel_reconnect()
        was_connected = self._state is ConnectionState.CONNECTED
        ws, self._ws = self._ws, None
        task, self._receive_task = self._receive_task, None
        self._state = ConnectionState.DISCONNECTED

        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if ws is not None:
            try:
                await ws.close()
            except TRANSPORT_ERRORS as exc:
                logger.debug("Error while closing session channel: %s", exc)
        if was_connected:
            logger.info("Session channel closed")
            self._publish_status(connected=False)

    async def _open(self) -> bool:
        if self._state is ConnectionState.CONNECTED:
            return True
        if self._state is ConnectionState.CONNECTING:
            return False

        url = self.config.url
        self._state = ConnectionState.CONNECTING
        try:
            ws = await self._connector(url)
        except asyncio.CancelledError:
            self._state = ConnectionState.DISCONNECTED
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Session channel could not connect to %s: %s", url, exc)
            self._state = ConnectionState.DISCONNECTED
            self._handle_loss(error=True)
            return False

        if self._closed:
            # close() ran while the connector was pending
            self._state = ConnectionState.DISCONNECTED
            await ws.close()
            return False

        self._ws = ws
        self._state = ConnectionState.CONNECTED
        self._reconnect_attempts = 0
        logger.info("Session channel connected to %s", url)
        self._receive_task = asyncio.ensure_future(self._receive_loop(ws))
        self._publish_status(connected=True)
        return True

    def _handle_loss(self, error: bool) -> None:
        self._ws = None
        self._state = ConnectionState.DISCONNECTED
        self._publish_status(connected=False, error=error)
        if self._closed:
            return

        if self._reconnect_attempts < self.config.max_reconnect_attempts:
            self._reconnect_attempts += 1
            logger.warning(
                "Reconnecting in %d ms (attempt %d/%d)",
                self.config.reconnect_delay_ms,
                self._reconnect_attempts,
                self.config.max_reconnect_attempts,
            )
            self._reconnect_timer = self._scheduler.call_later(
                self.config.reconnect_delay_ms, self._on_reconnect_timer
            )
        else:
            logger.error(
                "Session channel gave up after %d reconnect attempts",
                self._reconnect_attempts,
            )

    def _on_reconnect_timer(self) -> None:
        self._reconnect_timer = None
        if self._closed:
            return
        self._reconnect_task = asyncio.ensure_future(self._open())

    def _cancel_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _receive_loop(self, ws: Any) -> None:
        error = False
        try:
            async for raw in ws:
                self._dispatch(raw)
        except websockets.ConnectionClosed as exc:
            error = exc.rcvd is None or exc.rcvd.code != 1000
            logger.info("Session channel closed by peer: %s", exc)
        except OSError as exc:
            error = True
            logger.warning("Session channel transport error: %s", exc)

        if self._ws is ws:
            logger.info("Session channel disconnected")
            self._receive_task = None
            self._handle_loss(error=error)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    def _dispatch(self, raw: Any) -> None:
        try:
            frame = decode_frame(raw)
        except MalformedMessage as exc:
            logger.warning("Dropping malformed frame: %s", exc)
            return

        message_type = frame["type"]
        if known_type(message_type) is None:
            logger.debug("Ignoring unknown frame type %r", message_type)
        if not self._handlers.emit(message_type, frame):
            logger.debug("No handler for frame type %r", message_type)

    async def send(self, message_type: Union[MessageType, str], data: Optional[Mapping[str, Any]] = None) -> bool:
        """
        Send one frame.

        Returns:
            True if the frame was handed to the transport, False if the
            channel is not connected or the transport rejected it
        """
        try:
            await self.transmit(message_type, data)
        except TransportDisconnected as exc:
            if exc.__cause__ is None:
                logger.debug("%s not sent: %s", _type_value(message_type), exc)
            else:
                logger.warning("Session channel send failed: %s", exc)
            return False
        return True

    async def transmit(self, message_type: Union[MessageType, str], data: Optional[Mapping[str, Any]] = None) -> None:
        """
        Send one frame or raise.

        Raises:
            TransportDisconnected: If the channel is not connected, or the
                transport failed while sending (chained as ``__cause__``)
        """
        ws = self._ws
        if not self.is_connected or ws is None:
            raise TransportDisconnected("Session channel is not connected")
        try:
            await ws.send(encode_frame(message_type, data))
        except TRANSPORT_ERRORS as exc:
            raise TransportDisconnected(str(exc)) from exc

    async def join_session(self, session_id: int) -> bool:
        return await self.send(MessageType.JOIN_SESSION, {"sessionId": session_id})

    def _publish_status(self, connected: bool, error: bool = False) -> None:
        payload: Dict[str, Any] = {"type": MessageType.CONNECTION_STATUS.value, "connected": connected}
        if error:
            payload["error"] = True
        self._handlers.emit(MessageType.CONNECTION_STATUS.value, payload)


def _type_value(message_type: Union[MessageType, str]) -> str:
    return message_type.value if isinstance(message_type, MessageType) else str(message_type)
