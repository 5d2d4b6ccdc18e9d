"""
Client-side storage that talks to the server's REST routes.

``requests`` is blocking, so every call is pushed to the default executor.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, TypeVar

import requests

from convo_assist.errors import StorageFailed
from convo_assist.models.data_models import ActionItem, Message, Session, SpeakerType, Topic
from convo_assist.storage.base import StorageBackend

logger = logging.getLogger(__name__)

T = TypeVar("T")


class HttpStorage(StorageBackend):
    """
    Storage over the server REST routes.

    Attributes:
        base_url: Server root, e.g. ``http://localhost:8000``
        timeout: Per-request timeout in seconds
    """

    def __init__(self, base_url: str, timeout: float = 10.0, http: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = http or requests.Session()

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None, allow_missing: bool = False) -> Any:
        url = f"{self.base_url}{path}"
        logger.debug("%s %s", method, url)
        try:
            response = self._http.request(method, url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            raise StorageFailed(f"{method} {path} failed: {exc}") from exc

        if allow_missing and response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise StorageFailed(f"{method} {path} returned {response.status_code}: {response.text[:200]}")
        try:
            return response.json()
        except ValueError as exc:
            raise StorageFailed(f"{method} {path} returned invalid JSON") from exc

    async def _call(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None, allow_missing: bool = False) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: self._request(method, path, payload, allow_missing))

    @staticmethod
    def _parse(parser: Callable[[Any], T], data: Any) -> T:
        try:
            return parser(data)
        except (ValueError, TypeError, AttributeError) as exc:
            raise StorageFailed(f"Unexpected response body: {exc}") from exc

    def _parse_list(self, parser: Callable[[Any], T], data: Any) -> List[T]:
        if not isinstance(data, list):
            raise StorageFailed("Expected a JSON array")
        return [self._parse(parser, item) for item in data]

    # Sessions

    async def create_session(self, title: str) -> Session:
        data = await self._call("POST", "/api/sessions", {"title": title})
        return self._parse(Session.from_dict, data)

    async def get_session(self, session_id: int) -> Optional[Session]:
        data = await self._call("GET", f"/api/sessions/{session_id}", allow_missing=True)
        return None if data is None else self._parse(Session.from_dict, data)

    async def list_sessions(self) -> List[Session]:
        return self._parse_list(Session.from_dict, await self._call("GET", "/api/sessions"))

    async def update_session(
        self,
        session_id: int,
        title: Optional[str] = None,
        summary: Optional[str] = None,
    ) -> Optional[Session]:
        payload = {key: value for key, value in (("title", title), ("summary", summary)) if value is not None}
        data = await self._call("PATCH", f"/api/sessions/{session_id}", payload, allow_missing=True)
        return None if data is None else self._parse(Session.from_dict, data)

    # Messages

    async def list_messages(self, session_id: int) -> List[Message]:
        return self._parse_list(Message.from_dict, await self._call("GET", f"/api/sessions/{session_id}/messages"))

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
        payload: Dict[str, Any] = {
            "sessionId": session_id,
            "text": text,
            "speakerType": speaker_type.value,
            "speakerName": speaker_name,
            "isActionItem": is_action_item,
        }
        if timestamp is not None:
            payload["timestamp"] = timestamp.isoformat()
        if client_id is not None:
            payload["clientId"] = client_id
        return self._parse(Message.from_dict, await self._call("POST", "/api/messages", payload))

    async def update_message(self, message_id: int, is_action_item: Optional[bool] = None) -> Optional[Message]:
        payload = {} if is_action_item is None else {"isActionItem": is_action_item}
        data = await self._call("PATCH", f"/api/messages/{message_id}", payload, allow_missing=True)
        return None if data is None else self._parse(Message.from_dict, data)

    # Topics

    async def list_topics(self, session_id: int) -> List[Topic]:
        return self._parse_list(Topic.from_dict, await self._call("GET", f"/api/sessions/{session_id}/topics"))

    async def upsert_topic(self, session_id: int, label: str, weight: int = 1) -> Topic:
        payload = {"sessionId": session_id, "topic": label, "weight": weight}
        return self._parse(Topic.from_dict, await self._call("POST", "/api/topics", payload))

    # Action items

    async def list_action_items(self, session_id: int) -> List[ActionItem]:
        data = await self._call("GET", f"/api/sessions/{session_id}/action-items")
        return self._parse_list(ActionItem.from_dict, data)

    async def create_action_item(
        self,
        session_id: int,
        text: str,
        source_message_id: Optional[int] = None,
        completed: bool = False,
    ) -> ActionItem:
        payload = {
            "sessionId": session_id,
            "text": text,
            "messageId": source_message_id,
            "completed": completed,
        }
        return self._parse(ActionItem.from_dict, await self._call("POST", "/api/action-items", payload))

    async def update_action_item(
        self,
        item_id: int,
        completed: Optional[bool] = None,
        text: Optional[str] = None,
    ) -> Optional[ActionItem]:
        payload = {key: value for key, value in (("completed", completed), ("text", text)) if value is not None}
        data = await self._call("PATCH", f"/api/action-items/{item_id}", payload, allow_missing=True)
        return None if data is None else self._parse(ActionItem.from_dict, data)

    async def close(self) -> None:
        self._http.close()
