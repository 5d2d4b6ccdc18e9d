"""In-process storage used by the server when no database is configured."""
from __future__ import annotations

import itertools
import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from convo_assist.errors import StorageFailed
from convo_assist.models.data_models import (
    ActionItem,
    Message,
    Session,
    SpeakerType,
    Topic,
    topic_key,
    utc_now,
)
from convo_assist.storage.base import StorageBackend

logger = logging.getLogger(__name__)


class MemoryStorage(StorageBackend):
    """
    Dictionary-backed storage with monotonically increasing ids.

    Every call completes without suspending, so no lock is needed on a
    single event loop.
    """

    def __init__(self) -> None:
        self._sessions: Dict[int, Session] = {}
        self._messages: Dict[int, Message] = {}
        self._topics: Dict[int, Topic] = {}
        self._action_items: Dict[int, ActionItem] = {}
        self._session_ids = itertools.count(1)
        self._message_ids = itertools.count(1)
        self._topic_ids = itertools.count(1)
        self._action_item_ids = itertools.count(1)

    def _require_session(self, session_id: int) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise StorageFailed(f"Session {session_id} does not exist")
        return session

    # Sessions

    async def create_session(self, title: str) -> Session:
        session = Session(id=next(self._session_ids), title=title.strip() or "Untitled conversation")
        self._sessions[session.id] = session
        logger.info("Session %d created: %s", session.id, session.title)
        return replace(session)

    async def get_session(self, session_id: int) -> Optional[Session]:
        session = self._sessions.get(session_id)
        return replace(session) if session is not None else None

    async def list_sessions(self) -> List[Session]:
        return [replace(s) for s in sorted(self._sessions.values(), key=lambda s: (s.created_at, s.id), reverse=True)]

    async def update_session(
        self,
        session_id: int,
        title: Optional[str] = None,
        summary: Optional[str] = None,
    ) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if title is not None:
            session.title = title
        if summary is not None:
            session.summary = summary
        session.updated_at = utc_now()
        return replace(session)

    # Messages

    async def list_messages(self, session_id: int) -> List[Message]:
        messages = [m for m in self._messages.values() if m.session_id == session_id]
        return [replace(m) for m in sorted(messages, key=Message.sort_key)]

    async def create_message(
        self,
        session_id: int,
        text: str,
        speaker_type: SpeakerType,
        speaker_name: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        is_action_item: bool = False,
        client_id: Optional[str] = None,
    ) -> Message:
        self._require_session(session_id)
        if not text.strip():
            raise StorageFailed("Message text is empty")
        message = Message(
            id=next(self._message_ids),
            session_id=session_id,
            text=text,
            speaker_type=speaker_type,
            speaker_name=speaker_name,
            timestamp=timestamp or utc_now(),
            is_action_item=is_action_item,
            client_id=client_id,
        )
        self._messages[message.id] = message
        return replace(message)

    async def update_message(self, message_id: int, is_action_item: Optional[bool] = None) -> Optional[Message]:
        message = self._messages.get(message_id)
        if message is None:
            return None
        if is_action_item is not None:
            message.is_action_item = is_action_item
        return replace(message)

    # Topics

    async def list_topics(self, session_id: int) -> List[Topic]:
        return [replace(t) for t in self._topics.values() if t.session_id == session_id]

    async def upsert_topic(self, session_id: int, label: str, weight: int = 1) -> Topic:
        self._require_session(session_id)
        label = label.strip()
        if not label:
            raise StorageFailed("Topic label is empty")
        weight = max(1, weight)
        key = topic_key(label)
        for topic in self._topics.values():
            if topic.session_id == session_id and topic_key(topic.label) == key:
                topic.weight += weight
                return replace(topic)
        topic = Topic(id=next(self._topic_ids), session_id=session_id, label=label, weight=weight)
        self._topics[topic.id] = topic
        return replace(topic)

    # Action items

    async def list_action_items(self, session_id: int) -> List[ActionItem]:
        return [replace(a) for a in self._action_items.values() if a.session_id == session_id]

    async def create_action_item(
        self,
        session_id: int,
        text: str,
        source_message_id: Optional[int] = None,
        completed: bool = False,
    ) -> ActionItem:
        self._require_session(session_id)
        if not text.strip():
            raise StorageFailed("Action item text is empty")
        if source_message_id is not None:
            message = self._messages.get(source_message_id)
            if message is None or message.session_id != session_id:
                raise StorageFailed(f"Message {source_message_id} is not part of session {session_id}")
            message.is_action_item = True
        item = ActionItem(
            id=next(self._action_item_ids),
            session_id=session_id,
            text=text.strip(),
            source_message_id=source_message_id,
            completed=completed,
        )
        self._action_items[item.id] = item
        return replace(item)

    async def update_action_item(
        self,
        item_id: int,
        completed: Optional[bool] = None,
        text: Optional[str] = None,
    ) -> Optional[ActionItem]:
        item = self._action_items.get(item_id)
        if item is None:
            return None
        if completed is not None:
            item.completed = completed
        if text is not None:
            if not text.strip():
                raise StorageFailed("Action item text is empty")
            item.text = text.strip()
        return replace(item)
