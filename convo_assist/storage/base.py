"""Storage interface shared by the server routes, the hub and the coordinator."""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from convo_assist.models.data_models import ActionItem, Message, Session, SpeakerType, Topic


class StorageBackend(ABC):
    """
    Create/read/update access to sessions and their entities.

    Lookups by an unknown id return None (or an empty list); rejected writes
    raise :class:`~convo_assist.errors.StorageFailed`.
    """

    # Sessions --------------------------------------------------------------

    @abstractmethod
    async def create_session(self, title: str) -> Session:
        ...

    @abstractmethod
    async def get_session(self, session_id: int) -> Optional[Session]:
        ...

    @abstractmethod
    async def list_sessions(self) -> List[Session]:
        ...

    @abstractmethod
    async def update_session(
        self,
        session_id: int,
        title: Optional[str] = None,
        summary: Optional[str] = None,
    ) -> Optional[Session]:
        ...

    # Messages --------------------------------------------------------------

    @abstractmethod
    async def list_messages(self, session_id: int) -> List[Message]:
        """Messages of a session ordered by timestamp, then creation order."""

    @abstractmethod
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
        """Store a message; ``client_id`` is kept on it unchanged."""

    @abstractmethod
    async def update_message(self, message_id: int, is_action_item: Optional[bool] = None) -> Optional[Message]:
        ...

    # Topics ----------------------------------------------------------------

    @abstractmethod
    async def list_topics(self, session_id: int) -> List[Topic]:
        ...

    @abstractmethod
    async def upsert_topic(self, session_id: int, label: str, weight: int = 1) -> Topic:
        """Create the topic, or add ``weight`` to the one with the same label."""

    # Action items ----------------------------------------------------------

    @abstractmethod
    async def list_action_items(self, session_id: int) -> List[ActionItem]:
        ...

    @abstractmethod
    async def create_action_item(
        self,
        session_id: int,
        text: str,
        source_message_id: Optional[int] = None,
        completed: bool = False,
    ) -> ActionItem:
        ...

    @abstractmethod
    async def update_action_item(
        self,
        item_id: int,
        completed: Optional[bool] = None,
        text: Optional[str] = None,
    ) -> Optional[ActionItem]:
        ...

    # Helpers ---------------------------------------------------------------

    async def snapshot(self, session_id: int) -> Optional[Dict[str, Any]]:
        """Full wire snapshot of a session, or None if it does not exist."""
        session = await self.get_session(session_id)
        if session is None:
            return None
        messages = await self.list_messages(session_id)
        topics = await self.list_topics(session_id)
        action_items = await self.list_action_items(session_id)
        return {
            "session": session.to_dict(),
            "messages": [m.to_dict() for m in messages],
            "topics": [t.to_dict() for t in topics],
            "actionItems": [a.to_dict() for a in action_items],
        }

    async def close(self) -> None:
        """Release any held resources."""
