"""Data models for audio capture and conversation sessions."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (or datetime) into an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _require(data: Mapping[str, Any], key: str) -> Any:
    if key not in data or data[key] is None:
        raise ValueError(f"Missing field: {key}")
    return data[key]


def _int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Field {key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Field {key} must be an integer") from exc


def _optional_int(value: Any, key: str) -> Optional[int]:
    return None if value is None else _int(value, key)


# ============================================================================
# Capture
# ============================================================================

class RecorderStatus(str, Enum):
    INACTIVE = "inactive"
    RECORDING = "recording"
    PAUSED = "paused"


@dataclass(frozen=True)
class MonitorState:
    """Monitor-mode overlay, independent of the recording state machine."""
    active: bool = False
    device_id: Optional[str] = None


@dataclass
class RecorderState:
    """State of the capture engine.

    Replaced wholesale on every transition. ``audio_chunks`` is only appended
    to while recording and is cleared when the next recording starts.
    ``pause_time`` is set exactly while ``status`` is ``PAUSED``.
    """
    status: RecorderStatus = RecorderStatus.INACTIVE
    audio_chunks: List[bytes] = field(default_factory=list)
    start_time: Optional[float] = None
    pause_time: Optional[float] = None
    monitor: MonitorState = field(default_factory=MonitorState)

    def snapshot(self) -> "RecorderState":
        """Copy safe to hand out; mutating it does not affect the engine."""
        return RecorderState(
            status=self.status,
            audio_chunks=list(self.audio_chunks),
            start_time=self.start_time,
            pause_time=self.pause_time,
            monitor=self.monitor,
        )


@dataclass(frozen=True)
class FinalizedAudio:
    """A finished recording (or replay) as one contiguous audio object."""
    data: bytes = b""
    ref: str = ""
    duration_ms: int = 0
    mime_type: str = "audio/wav"

    @property
    def is_empty(self) -> bool:
        return not self.data


class DeviceKind(str, Enum):
    INPUT = "input"
    OUTPUT = "output"


@dataclass(frozen=True)
class AudioDevice:
    device_id: str
    label: str
    kind: DeviceKind

    def to_dict(self) -> Dict[str, Any]:
        return {"deviceId": self.device_id, "label": self.label, "kind": self.kind.value}


# ============================================================================
# Sessions
# ============================================================================

class SpeakerType(str, Enum):
    SELF = "self"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "SpeakerType":
        # "user" is what older clients send for the local speaker
        if value == "user":
            return cls.SELF
        try:
            return cls(value)
        except ValueError as exc:
            raise ValueError(f"Invalid speaker type: {value!r}") from exc


@dataclass
class Session:
    id: int
    title: str
    summary: str = ""
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "summary": self.summary,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Session":
        return cls(
            id=_int(_require(data, "id"), "id"),
            title=str(data.get("title") or ""),
            summary=str(data.get("summary") or ""),
            created_at=parse_timestamp(data["createdAt"]) if data.get("createdAt") else utc_now(),
            updated_at=parse_timestamp(data["updatedAt"]) if data.get("updatedAt") else utc_now(),
        )


@dataclass
class Message:
    """One transcribed utterance.

    Immutable once created except for ``is_action_item``, which may be
    promoted when an action item is detected from it.
    """
    id: int
    session_id: Optional[int]
    text: str
    speaker_type: SpeakerType
    speaker_name: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
    is_action_item: bool = False
    # opaque token from the creating client, echoed back so it can match its own copy
    client_id: Optional[str] = None

    def sort_key(self) -> Tuple[datetime, int]:
        return self.timestamp, self.id

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "sessionId": self.session_id,
            "text": self.text,
            "speakerType": self.speaker_type.value,
            "speakerName": self.speaker_name,
            "timestamp": self.timestamp.isoformat(),
            "isActionItem": self.is_action_item,
        }
        if self.client_id is not None:
            data["clientId"] = self.client_id
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        text = _require(data, "text")
        if not isinstance(text, str):
            raise ValueError("Field text must be a string")
        client_id = data.get("clientId")
        if client_id is not None and not isinstance(client_id, str):
            raise ValueError("Field clientId must be a string")
        return cls(
            id=_int(_require(data, "id"), "id"),
            session_id=_optional_int(data.get("sessionId"), "sessionId"),
            text=text,
            speaker_type=SpeakerType.parse(_require(data, "speakerType")),
            speaker_name=data.get("speakerName"),
            timestamp=parse_timestamp(data["timestamp"]) if data.get("timestamp") else utc_now(),
            is_action_item=bool(data.get("isActionItem", False)),
            client_id=client_id,
        )


@dataclass
class Topic:
    """A detected topic; unique per ``(session_id, label)``."""
    id: int
    session_id: Optional[int]
    label: str
    weight: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "topic": self.label,
            "weight": self.weight,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Topic":
        label = _require(data, "topic")
        if not isinstance(label, str) or not label.strip():
            raise ValueError("Field topic must be a non-empty string")
        weight = _int(data.get("weight", 1), "weight")
        if weight < 1:
            raise ValueError("Field weight must be positive")
        return cls(
            id=_int(_require(data, "id"), "id"),
            session_id=_optional_int(data.get("sessionId"), "sessionId"),
            label=label.strip(),
            weight=weight,
        )


@dataclass
class ActionItem:
    id: int
    session_id: Optional[int]
    text: str
    source_message_id: Optional[int] = None
    completed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "messageId": self.source_message_id,
            "text": self.text,
            "completed": self.completed,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ActionItem":
        text = _require(data, "text")
        if not isinstance(text, str):
            raise ValueError("Field text must be a string")
        return cls(
            id=_int(_require(data, "id"), "id"),
            session_id=_optional_int(data.get("sessionId"), "sessionId"),
            text=text,
            source_message_id=_optional_int(data.get("messageId"), "messageId"),
            completed=bool(data.get("completed", False)),
        )


def topic_key(label: str) -> str:
    """Normalized label used for topic uniqueness."""
    return " ".join(label.split()).casefold()


# ============================================================================
# Analysis and transcription
# ============================================================================

@dataclass(frozen=True)
class TopicDetection:
    label: str
    weight: int = 1


@dataclass
class AnalysisResult:
    topics: List[TopicDetection] = field(default_factory=list)
    action_items: List[str] = field(default_factory=list)
    suggested_questions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topics": [{"topic": t.label, "weight": t.weight} for t in self.topics],
            "actionItems": [{"text": text} for text in self.action_items],
            "suggestedQuestions": list(self.suggested_questions),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AnalysisResult":
        topics = []
        for item in data.get("topics") or []:
            label = str(item.get("topic") or "").strip()
            if label:
                topics.append(TopicDetection(label=label, weight=max(1, _int(item.get("weight", 1), "weight"))))
        action_items = [
            str(item.get("text")).strip()
            for item in data.get("actionItems") or []
            if isinstance(item, Mapping) and str(item.get("text") or "").strip()
        ]
        questions = [str(q) for q in data.get("suggestedQuestions") or [] if str(q).strip()]
        return cls(topics=topics, action_items=action_items, suggested_questions=questions)


@dataclass
class TranscribedSegment:
    """Represents a transcribed speech segment."""
    text: str
    speaker_type: SpeakerType
    speaker_name: Optional[str]
    start_time: datetime
    end_time: datetime
    duration: float


def history_payload(messages: List[Message]) -> List[Dict[str, Any]]:
    """Compact message history sent to the analysis collaborator."""
    return [
        {"speakerType": m.speaker_type.value, "speakerName": m.speaker_name, "text": m.text}
        for m in messages
    ]
