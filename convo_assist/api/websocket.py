"""
WebSocket session hub for real-time updates.

This module handles:
- WebSocket connection lifecycle
- Per-channel session assignment and the join snapshot
- Relaying session-scoped events to the channels joined to that session
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from convo_assist.errors import MalformedMessage, StorageFailed
from convo_assist.protocol import RELAY_TYPES, MessageType, decode_frame, known_type
from convo_assist.storage.base import StorageBackend

logger = logging.getLogger(__name__)


@dataclass
class ChannelInfo:
    """Registry entry for one connected channel."""
    session_id: Optional[int] = None
    connected_at: float = field(default_factory=time.time)


def is_open(websocket: WebSocket) -> bool:
    return (
        websocket.client_state == WebSocketState.CONNECTED
        and websocket.application_state == WebSocketState.CONNECTED
    )


class SessionHub:
    """
    Tracks which session each connected channel has joined and relays
    session-scoped events to exactly those channels.

    Registry mutations happen synchronously between awaits, so no lock is
    needed; broadcast iterates over a snapshot of the registry and re-checks
    each channel's session before its send.
    """

    def __init__(self, storage: StorageBackend) -> None:
        self.storage = storage
        self.channels: Dict[WebSocket, ChannelInfo] = {}

    def register_channel(self, websocket: WebSocket) -> None:
        """Add an accepted channel, not yet assigned to any session."""
        self.channels.setdefault(websocket, ChannelInfo())
        logger.info("WebSocket connected: %d active connections", len(self.channels))

    def unregister_channel(self, websocket: WebSocket) -> None:
        info = self.channels.pop(websocket, None)
        if info is not None:
            logger.info(
                "WebSocket disconnected (session %s): %d active connections",
                info.session_id,
                len(self.channels),
            )

    def session_of(self, websocket: WebSocket) -> Optional[int]:
        info = self.channels.get(websocket)
        return info.session_id if info else None

    def channels_for(self, session_id: int) -> List[WebSocket]:
        return [ws for ws, info in self.channels.items() if info.session_id == session_id]

    async def join_session(self, websocket: WebSocket, session_id: int) -> bool:
        """
        Assign ``websocket`` to ``session_id`` and push it the session snapshot.

        Rejoining switches the channel; it stops receiving relays for its
        previous session immediately.

        Returns:
            True if the snapshot was delivered
        """
        info = self.channels.get(websocket)
        if info is None:
            logger.warning("join_session from unregistered channel ignored")
            return False
        previous = info.session_id
        info.session_id = session_id
        if previous not in (None, session_id):
            logger.info("Channel switched from session %s to %s", previous, session_id)

        try:
            snapshot = await self.storage.snapshot(session_id)
        except StorageFailed as exc:
            logger.error("Could not load snapshot of session %d: %s", session_id, exc)
            return False
        if snapshot is None:
            logger.warning("Channel joined unknown session %d; no snapshot sent", session_id)
            return False
        return await self._send(websocket, {"type": MessageType.SESSION_DATA.value, **snapshot})

    async def broadcast(self, session_id: int, event: Mapping[str, Any]) -> int:
        """
        Send ``event`` to every open channel joined to ``session_id``.

        Closed channels are skipped and pruned; channels whose send fails
        are pruned as well.

        Returns:
            Number of channels the event was delivered to
        """
        targets = self.channels_for(session_id)
        if not targets:
            return 0

        delivered = 0
        for websocket in targets:
            info = self.channels.get(websocket)
            if info is None or info.session_id != session_id:
                # left or switched sessions while an earlier send was awaiting
                continue
            if not is_open(websocket):
                self.unregister_channel(websocket)
                continue
            if await self._send(websocket, event):
                delivered += 1
        logger.debug("Broadcast %s to %d channels of session %d", event.get("type"), delivered, session_id)
        return delivered

    async def _send(self, websocket: WebSocket, message: Mapping[str, Any]) -> bool:
        try:
            await websocket.send_json(dict(message))
        except Exception as exc:  # noqa: BLE001
            logger.error("WebSocket send failed: %s", exc)
            self.unregister_channel(websocket)
            return False
        return True

    async def handle_frame(self, websocket: WebSocket, raw: str) -> None:
        """Dispatch one incoming frame from ``websocket``."""
        try:
            frame = decode_frame(raw)
        except MalformedMessage as exc:
            logger.warning("Dropping malformed frame: %s", exc)
            return

        message_type = known_type(frame["type"])
        if message_type is MessageType.JOIN_SESSION:
            session_id = frame.get("sessionId")
            if isinstance(session_id, bool) or not isinstance(session_id, int):
                logger.warning("join_session without integer sessionId: %r", session_id)
                return
            await self.join_session(websocket, session_id)
        elif message_type in RELAY_TYPES:
            session_id = self.session_of(websocket)
            if session_id is None:
                logger.warning("Dropping %s from channel without a session", frame["type"])
                return
            await self.broadcast(session_id, frame)
        else:
            logger.debug("Ignoring frame of type %s", frame["type"])

    async def close_all(self) -> None:
        for websocket in list(self.channels):
            self.unregister_channel(websocket)
            if is_open(websocket):
                try:
                    await websocket.close()
                except Exception as exc:  # noqa: BLE001
                    logger.debug("Error closing WebSocket: %s", exc)


async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    WebSocket endpoint handler.

    Accepts the connection, registers it with the app's hub and dispatches
    frames until the client disconnects.

    Args:
        websocket: The WebSocket connection
    """
    hub: SessionHub = websocket.app.state.hub
    await websocket.accept()
    hub.register_channel(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            await hub.handle_frame(websocket, raw)
    except WebSocketDisconnect:
        pass
    finally:
        hub.unregister_channel(websocket)
