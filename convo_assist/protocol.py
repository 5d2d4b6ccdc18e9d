"""
Wire protocol for the ``/ws`` session channel.

Frames are JSON objects ``{"type": <str>, ...payload}``. Both ends ignore
types they do not recognise.
"""
from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from convo_assist.errors import MalformedMessage

WS_PATH = "/ws"


class MessageType(str, Enum):
    JOIN_SESSION = "join_session"
    SESSION_DATA = "session_data"
    NEW_MESSAGE = "new_message"
    NEW_TOPIC = "new_topic"
    NEW_ACTION_ITEM = "new_action_item"
    UPDATED_ACTION_ITEM = "updated_action_item"
    # Published locally by the client channel, never sent over the wire.
    CONNECTION_STATUS = "connection_status"


# Payload key holding the entity for each relayed type.
ENTITY_KEYS: Dict[MessageType, str] = {
    MessageType.NEW_MESSAGE: "message",
    MessageType.NEW_TOPIC: "topic",
    MessageType.NEW_ACTION_ITEM: "actionItem",
    MessageType.UPDATED_ACTION_ITEM: "actionItem",
}

RELAY_TYPES = frozenset(ENTITY_KEYS)


def encode_frame(message_type: str, data: Optional[Mapping[str, Any]] = None) -> str:
    """Serialize ``{type, ...data}``; ``data`` may not override ``type``."""
    type_value = message_type.value if isinstance(message_type, MessageType) else str(message_type)
    frame: Dict[str, Any] = dict(data or {})
    frame["type"] = type_value
    return json.dumps(frame, ensure_ascii=False)


def decode_frame(raw: Any) -> Dict[str, Any]:
    """Parse a raw frame into a dict with a string ``type``.

    Raises:
        MalformedMessage: If the frame is not JSON, not an object, or has no
            string ``type``.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedMessage(f"Frame is not UTF-8: {exc}") from exc
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedMessage(f"Frame is not valid JSON: {exc}") from exc
    if not isinstance(frame, dict):
        raise MalformedMessage("Frame is not a JSON object")
    if not isinstance(frame.get("type"), str) or not frame["type"]:
        raise MalformedMessage("Frame has no message type")
    return frame


def known_type(value: str) -> Optional[MessageType]:
    try:
        return MessageType(value)
    except ValueError:
        return None
