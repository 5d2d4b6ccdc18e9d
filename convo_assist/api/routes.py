"""
FastAPI route handlers for sessions, their entities and analysis.

This module provides REST API endpoints for:
- Health checks
- Sessions, messages, topics and action items (create/read/update)
- Conversation analysis (summary, topics, suggestions, assistant)

Every create/update commits to storage first and then broadcasts the stored
entity to the channels joined to its session.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request

from convo_assist.analysis.base import AnalysisBackend
from convo_assist.api.websocket import SessionHub
from convo_assist.errors import AnalysisFailed, StorageFailed
from convo_assist.models.data_models import SpeakerType, parse_timestamp
from convo_assist.protocol import ENTITY_KEYS, MessageType
from convo_assist.storage.base import StorageBackend

logger = logging.getLogger(__name__)

# Create router
router = APIRouter()


def _storage(request: Request) -> StorageBackend:
    return request.app.state.storage


def _analyzer(request: Request) -> AnalysisBackend:
    return request.app.state.analyzer


def _hub(request: Request) -> SessionHub:
    return request.app.state.hub


def _int_field(payload: Dict[str, Any], key: str, required: bool = True) -> Optional[int]:
    value = payload.get(key)
    if value is None:
        if required:
            raise HTTPException(status_code=400, detail=f"{key} is required")
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise HTTPException(status_code=400, detail=f"{key} must be an integer")
    return value


def _text_field(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise HTTPException(status_code=400, detail=f"{key} is required")
    return value.strip()


def _bool_field(payload: Dict[str, Any], key: str) -> Optional[bool]:
    value = payload.get(key)
    if value is not None and not isinstance(value, bool):
        raise HTTPException(status_code=400, detail=f"{key} must be a boolean")
    return value


def _history(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    messages = payload.get("messages")
    if not isinstance(messages, list) or not all(isinstance(m, dict) for m in messages):
        raise HTTPException(status_code=400, detail="messages must be a list of objects")
    return messages


async def _require_session(storage: StorageBackend, session_id: int) -> None:
    if await storage.get_session(session_id) is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")


async def _broadcast(request: Request, message_type: MessageType, entity: Any) -> None:
    if entity.session_id is None:
        return
    event = {"type": message_type.value, ENTITY_KEYS[message_type]: entity.to_dict()}
    await _hub(request).broadcast(entity.session_id, event)


@router.get("/health")
async def health_check(request: Request) -> Dict[str, Any]:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "connections": len(_hub(request).channels),
    }


# ============================================================================
# Sessions
# ============================================================================

@router.get("/api/sessions")
async def list_sessions(request: Request) -> List[Dict[str, Any]]:
    sessions = await _storage(request).list_sessions()
    return [s.to_dict() for s in sessions]


@router.post("/api/sessions", status_code=201)
async def create_session(request: Request, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create a new conversation session.

    Args:
        payload: Dictionary containing:
            - title (str): Session title (required)
    """
    title = _text_field(payload, "title")
    try:
        session = await _storage(request).create_session(title)
    except StorageFailed as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("Session %d created: %s", session.id, session.title)
    return session.to_dict()


@router.get("/api/sessions/{session_id}")
async def get_session(request: Request, session_id: int) -> Dict[str, Any]:
    session = await _storage(request).get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session.to_dict()


@router.patch("/api/sessions/{session_id}")
async def update_session(request: Request, session_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
    title = payload.get("title")
    summary = payload.get("summary")
    if title is not None and not isinstance(title, str):
        raise HTTPException(status_code=400, detail="title must be a string")
    if summary is not None and not isinstance(summary, str):
        raise HTTPException(status_code=400, detail="summary must be a string")
    try:
        session = await _storage(request).update_session(session_id, title=title, summary=summary)
    except StorageFailed as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session.to_dict()


# ============================================================================
# Messages
# ============================================================================

@router.get("/api/sessions/{session_id}/messages")
async def list_messages(request: Request, session_id: int) -> List[Dict[str, Any]]:
    storage = _storage(request)
    await _require_session(storage, session_id)
    return [m.to_dict() for m in await storage.list_messages(session_id)]


@router.post("/api/messages", status_code=201)
async def create_message(request: Request, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Store a transcribed message and relay it to the session.

    Args:
        payload: Dictionary containing:
            - sessionId (int): Owning session (required)
            - text (str): Message text (required)
            - speakerType (str): "self" or "other" (required)
            - speakerName (str): Display name (optional)
            - timestamp (str): ISO-8601 time of the utterance (optional)
            - isActionItem (bool): Whether it holds an action item (optional)
            - clientId (str): Creator's correlation token, echoed in the
              relayed frame and the response (optional)
    """
    storage = _storage(request)
    session_id = _int_field(payload, "sessionId")
    text = _text_field(payload, "text")
    try:
        speaker_type = SpeakerType.parse(payload.get("speakerType"))
        timestamp = parse_timestamp(payload["timestamp"]) if payload.get("timestamp") else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    speaker_name = payload.get("speakerName")
    if speaker_name is not None and not isinstance(speaker_name, str):
        raise HTTPException(status_code=400, detail="speakerName must be a string")
    client_id = payload.get("clientId")
    if client_id is not None and not isinstance(client_id, str):
        raise HTTPException(status_code=400, detail="clientId must be a string")

    await _require_session(storage, session_id)
    try:
        message = await storage.create_message(
            session_id,
            text,
            speaker_type,
            speaker_name=speaker_name,
            timestamp=timestamp,
            is_action_item=bool(_bool_field(payload, "isActionItem")),
            client_id=client_id,
        )
    except StorageFailed as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    await _broadcast(request, MessageType.NEW_MESSAGE, message)
    return message.to_dict()


@router.patch("/api/messages/{message_id}")
async def update_message(request: Request, message_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
    is_action_item = _bool_field(payload, "isActionItem")
    message = await _storage(request).update_message(message_id, is_action_item=is_action_item)
    if message is None:
        raise HTTPException(status_code=404, detail=f"Message {message_id} not found")
    return message.to_dict()


# ============================================================================
# Topics
# ============================================================================

@router.get("/api/sessions/{session_id}/topics")
async def list_topics(request: Request, session_id: int) -> List[Dict[str, Any]]:
    storage = _storage(request)
    await _require_session(storage, session_id)
    return [t.to_dict() for t in await storage.list_topics(session_id)]


@router.post("/api/topics", status_code=201)
async def upsert_topic(request: Request, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Create a topic, or add weight to the session's topic with the same label."""
    storage = _storage(request)
    session_id = _int_field(payload, "sessionId")
    label = _text_field(payload, "topic")
    weight = _int_field(payload, "weight", required=False) or 1
    if weight < 1:
        raise HTTPException(status_code=400, detail="weight must be positive")

    await _require_session(storage, session_id)
    try:
        topic = await storage.upsert_topic(session_id, label, weight)
    except StorageFailed as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    await _broadcast(request, MessageType.NEW_TOPIC, topic)
    return topic.to_dict()


# ============================================================================
# Action items
# ============================================================================

@router.get("/api/sessions/{session_id}/action-items")
async def list_action_items(request: Request, session_id: int) -> List[Dict[str, Any]]:
    storage = _storage(request)
    await _require_session(storage, session_id)
    return [a.to_dict() for a in await storage.list_action_items(session_id)]


@router.post("/api/action-items", status_code=201)
async def create_action_item(request: Request, payload: Dict[str, Any]) -> Dict[str, Any]:
    storage = _storage(request)
    session_id = _int_field(payload, "sessionId")
    text = _text_field(payload, "text")
    message_id = _int_field(payload, "messageId", required=False)
    completed = bool(_bool_field(payload, "completed"))

    await _require_session(storage, session_id)
    try:
        item = await storage.create_action_item(
            session_id,
            text,
            source_message_id=message_id,
            completed=completed,
        )
    except StorageFailed as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    await _broadcast(request, MessageType.NEW_ACTION_ITEM, item)
    return item.to_dict()


@router.patch("/api/action-items/{item_id}")
async def update_action_item(request: Request, item_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
    completed = _bool_field(payload, "completed")
    text = payload.get("text")
    if text is not None and (not isinstance(text, str) or not text.strip()):
        raise HTTPException(status_code=400, detail="text must be a non-empty string")
    try:
        item = await _storage(request).update_action_item(item_id, completed=completed, text=text)
    except StorageFailed as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if item is None:
        raise HTTPException(status_code=404, detail=f"Action item {item_id} not found")

    await _broadcast(request, MessageType.UPDATED_ACTION_ITEM, item)
    return item.to_dict()


# ============================================================================
# Analysis
# ============================================================================

@router.post("/api/analyze/text")
async def analyze_text(request: Request, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Detect topics, action items and suggested questions in a history."""
    history = _history(payload)
    try:
        result = await _analyzer(request).analyze(history)
    except AnalysisFailed as exc:
        logger.warning("Analysis failed: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return result.to_dict()


@router.post("/api/analyze/summary")
async def analyze_summary(request: Request, payload: Dict[str, Any]) -> Dict[str, Any]:
    history = _history(payload)
    try:
        summary = await _analyzer(request).summarize(history)
    except AnalysisFailed as exc:
        logger.warning("Summary failed: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"summary": summary}


@router.post("/api/analyze/suggest-response")
async def suggest_response(request: Request, payload: Dict[str, Any]) -> Dict[str, Any]:
    history = _history(payload)
    last_message = payload.get("lastMessage")
    if not isinstance(last_message, str):
        raise HTTPException(status_code=400, detail="lastMessage is required")
    try:
        suggestion = await _analyzer(request).suggest_response(history, last_message)
    except AnalysisFailed as exc:
        logger.warning("Response suggestion failed: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"suggestion": suggestion}


@router.post("/api/analyze/assist")
async def assist(request: Request, payload: Dict[str, Any]) -> Dict[str, Any]:
    history = _history(payload)
    prompt = _text_field(payload, "prompt")
    try:
        response = await _analyzer(request).assist(history, prompt)
    except AnalysisFailed as exc:
        logger.warning("Assistant request failed: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"response": response}
