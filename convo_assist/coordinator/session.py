"""
Client-local projection of one conversation session.

The coordinator merges locally produced entities (transcribed messages,
detected topics and action items) with entities relayed by the session hub
into one deduplicated, ordered view, and keeps summary, suggested response
and suggested questions up to date through the analysis collaborator.
"""

from __future__ import annotations

import asyncio
import bisect
import itertools
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple

from convo_assist.analysis.base import AnalysisBackend
from convo_assist.capture.engine import CaptureEngine, CaptureEvent
from convo_assist.channel.session_channel import SessionChannel
from convo_assist.errors import AnalysisFailed, DeviceUnavailable, StorageFailed
from convo_assist.events import Disposer, EventEmitter
from convo_assist.models.data_models import (
    ActionItem,
    AnalysisResult,
    FinalizedAudio,
    Message,
    RecorderStatus,
    Session,
    SpeakerType,
    Topic,
    TranscribedSegment,
    history_payload,
    topic_key,
    utc_now,
)
from convo_assist.protocol import ENTITY_KEYS, MessageType
from convo_assist.storage.base import StorageBackend
from convo_assist.transcription.service import TranscriptionService

logger = logging.getLogger(__name__)

# A storage mutation waiting for a session id; receives the id when run
PendingOp = Callable[[int], Awaitable[None]]

DEFAULT_SPEAKER_NAMES = {SpeakerType.SELF: "You", SpeakerType.OTHER: "Other"}
ASSIST_FALLBACK = "Unable to process your request at this time."


class CoordinatorEvent(str, Enum):
    STATE_CHANGED = "state_changed"
    NOTICE = "notice"


class NoticeLevel(str, Enum):
    INFO = "info"
    ERROR = "error"


@dataclass(frozen=True)
class Notice:
    """User-facing notification."""
    title: str
    description: str
    level: NoticeLevel = NoticeLevel.INFO


def action_key(text: str) -> str:
    return " ".join(text.split()).casefold()


class SessionCoordinator:
    """
    Owns one client's live view of exactly one session.

    Merge rules:

    - Messages and action items are keyed by id. A creation event for an id
      already present is ignored; an update event replaces the entity.
    - Topics are additionally keyed by case-insensitive label. A repeated
      detection adds its weight locally; an echo from the server never
      lowers the local weight.
    - Locally created entities get a negative provisional id right away. When
      storage returns the canonical entity the provisional one is swapped in
      place, or dropped if the canonical echo already arrived.

    Storage writes go through an ordered outbox that only drains once a
    session id is known, so nothing recorded before the session exists is
    lost.

    Example:
        >>> coordinator = SessionCoordinator(engine, channel, storage, analyzer)
        >>> await coordinator.start_recording()
        >>> coordinator.add_transcribed_message("Hello there", SpeakerType.OTHER)
        >>> await coordinator.drain()
        >>> [m.text for m in coordinator.messages]
        ['Hello there']
    """

    def __init__(
        self,
        engine: CaptureEngine,
        channel: SessionChannel,
        storage: StorageBackend,
        analyzer: AnalysisBackend,
        transcriber: Optional[TranscriptionService] = None,
    ) -> None:
        self._engine = engine
        self._channel = channel
        self._storage = storage
        self._analyzer = analyzer
        self._transcriber = transcriber
        self._events: EventEmitter[CoordinatorEvent] = EventEmitter()

        self._session_id: Optional[int] = None
        self._title = ""
        self._summary = ""
        self._suggested_response = ""
        self._suggested_questions: List[str] = []
        self._current_speaker = SpeakerType.SELF
        self._connected = channel.is_connected

        self._messages: Dict[int, Message] = {}
        self._message_order: List[Tuple[datetime, int, int]] = []
        self._message_seq: Dict[int, int] = {}
        self._topics: Dict[int, Topic] = {}
        self._topic_ids: Dict[str, int] = {}
        self._action_items: Dict[int, ActionItem] = {}
        self._canonical_ids: Dict[int, int] = {}
        self._client_ids: Dict[str, int] = {}

        self._provisional_ids = itertools.count(-1, -1)
        self._sequence = itertools.count()

        self._outbox: List[PendingOp] = []
        self._outbox_task: Optional[asyncio.Task] = None
        self._session_task: Optional[asyncio.Task] = None
        self._session_failed = False
        self._refresh_task: Optional[asyncio.Task] = None
        self._refresh_dirty = False
        self._tasks: Set[asyncio.Task] = set()

        self._disposers: List[Disposer] = [
            engine.subscribe(CaptureEvent.CHUNK_AVAILABLE, self._on_chunk),
            engine.subscribe(CaptureEvent.STATUS_CHANGED, self._on_status),
            channel.subscribe(MessageType.SESSION_DATA, self._on_session_data),
            channel.subscribe(MessageType.NEW_MESSAGE, self._on_new_message),
            channel.subscribe(MessageType.NEW_TOPIC, self._on_new_topic),
            channel.subscribe(MessageType.NEW_ACTION_ITEM, self._on_new_action_item),
            channel.subscribe(MessageType.UPDATED_ACTION_ITEM, self._on_updated_action_item),
            channel.subscribe(MessageType.CONNECTION_STATUS, self._on_connection_status),
        ]

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> Optional[int]:
        return self._session_id

    @property
    def title(self) -> str:
        return self._title

    @property
    def messages(self) -> List[Message]:
        """Messages ordered by timestamp, then creation order."""
        return [self._messages[message_id] for _, _, message_id in self._message_order]

    @property
    def topics(self) -> List[Topic]:
        """Topics, heaviest first."""
        return sorted(self._topics.values(), key=lambda t: (-t.weight, t.label.casefold()))

    @property
    def action_items(self) -> List[ActionItem]:
        return list(self._action_items.values())

    @property
    def summary(self) -> str:
        return self._summary

    @property
    def suggested_response(self) -> str:
        return self._suggested_response

    @property
    def suggested_questions(self) -> List[str]:
        return list(self._suggested_questions)

    @property
    def current_speaker(self) -> SpeakerType:
        return self._current_speaker

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def recording_status(self) -> RecorderStatus:
        return self._engine.status

    @property
    def pending_writes(self) -> int:
        return len(self._outbox)

    def subscribe(self, kind: CoordinatorEvent, listener: Callable[..., None]) -> Disposer:
        return self._events.subscribe(kind, listener)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def start_recording(self, device_id: Optional[str] = None) -> bool:
        """Start capture (and transcription); publishes a notice either way."""
        self._session_failed = False
        try:
            await self._engine.start(device_id)
        except DeviceUnavailable as exc:
            logger.error("Could not start recording: %s", exc)
            self._notify(
                "Recording error",
                "Could not start recording. Please check microphone permissions.",
                NoticeLevel.ERROR,
            )
            return False

        if self._transcriber is not None and not self._transcriber.is_running():
            self._transcriber.start(self._on_segment)
        self._notify("Recording started", "Your conversation is now being recorded and transcribed.")
        return True

    async def stop_recording(self) -> FinalizedAudio:
        was_active = self._engine.status is not RecorderStatus.INACTIVE
        result = self._engine.stop()
        if self._transcriber is not None and self._transcriber.is_running():
            await self._transcriber.stop()
        if was_active:
            self._notify("Recording stopped", "Your conversation has been saved.")
        return result

    def replay_last_minute(self) -> FinalizedAudio:
        result = self._engine.replay_last_minute()
        if result.is_empty:
            self._notify("Nothing to replay", "No recent audio available for replay.", NoticeLevel.ERROR)
        else:
            self._notify("Replaying last minute", "Playing back the last minute of conversation.")
        return result

    def set_speaker(self, speaker_type: SpeakerType) -> None:
        if speaker_type is not self._current_speaker:
            self._current_speaker = speaker_type
            if self._transcriber is not None:
                self._transcriber.speaker_type = speaker_type
            self._changed()

    def toggle_speaker(self) -> SpeakerType:
        other = SpeakerType.OTHER if self._current_speaker is SpeakerType.SELF else SpeakerType.SELF
        self.set_speaker(other)
        return other

    # ------------------------------------------------------------------
    # Local mutations
    # ------------------------------------------------------------------

    def add_transcribed_message(
        self,
        text: str,
        speaker_type: Optional[SpeakerType] = None,
        speaker_name: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Optional[Message]:
        """Insert a locally transcribed message and queue it for storage."""
        text = text.strip()
        if not text:
            return None
        speaker_type = speaker_type or self._current_speaker
        client_id = uuid.uuid4().hex
        message = Message(
            id=next(self._provisional_ids),
            session_id=self._session_id,
            text=text,
            speaker_type=speaker_type,
            speaker_name=speaker_name or DEFAULT_SPEAKER_NAMES[speaker_type],
            timestamp=timestamp or utc_now(),
            client_id=client_id,
        )
        self._insert_message(message)
        self._client_ids[client_id] = message.id
        self._submit(lambda session_id: self._persist_message(message.id, session_id))
        self._messages_changed()
        return message

    def add_action_item(self, text: str, source_message_id: Optional[int] = None) -> Optional[ActionItem]:
        """Manually add an action item, optionally promoting its source message."""
        text = text.strip()
        if not text:
            return None
        item = ActionItem(
            id=next(self._provisional_ids),
            session_id=self._session_id,
            text=text,
            source_message_id=source_message_id,
        )
        self._action_items[item.id] = item
        if source_message_id is not None:
            self._promote_message(source_message_id)
        self._submit(lambda session_id: self._persist_action_item(item.id, session_id))
        self._changed()
        return item

    def toggle_action_item(self, item_id: int, completed: bool) -> bool:
        """Optimistically mark an action item (not) completed."""
        item_id = self._canonical_ids.get(item_id, item_id)
        item = self._action_items.get(item_id)
        if item is None:
            logger.warning("Cannot toggle unknown action item %d", item_id)
            return False
        if item.completed == completed:
            return True
        self._action_items[item_id] = replace(item, completed=completed)
        if item_id > 0:
            self._submit(lambda _session_id: self._persist_toggle(item_id, completed))
        self._changed()
        return True

    async def ask_assistant(self, prompt: str) -> str:
        """Ask the analysis collaborator a private question about the conversation."""
        if not prompt.strip():
            return ""
        try:
            reply = await self._analyzer.assist(history_payload(self.messages), prompt)
        except AnalysisFailed as exc:
            logger.warning("Assistant request failed: %s", exc)
            self._notify("AI Assistant Error", "Could not process your request. Please try again.", NoticeLevel.ERROR)
            return ASSIST_FALLBACK
        self._notify("AI Assistant", reply)
        return reply

    async def open_session(self, session_id: int) -> None:
        """Switch this client to observe an existing session."""
        if self._outbox:
            logger.warning("Discarding %d unsent changes while switching sessions", len(self._outbox))
            self._notify(
                "Unsaved changes discarded",
                f"{len(self._outbox)} local changes were not saved before switching sessions.",
                NoticeLevel.ERROR,
            )
        self._reset()
        self._session_id = session_id
        self._changed()
        if await self._channel.join_session(session_id):
            return
        try:
            snapshot = await self._storage.snapshot(session_id)
        except StorageFailed as exc:
            logger.error("Could not load session %d: %s", session_id, exc)
            self._notify("Error loading session", "Could not load the session. Please try again.", NoticeLevel.ERROR)
            return
        if snapshot is not None:
            self._apply_snapshot(snapshot)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def drain(self) -> None:
        """Wait until every background task (writes, refreshes) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for dispose in self._disposers:
            dispose()
        self._disposers = []
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._events.clear()

    def _reset(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._outbox = []
        self._outbox_task = None
        self._session_task = None
        self._refresh_task = None
        self._refresh_dirty = False
        self._session_id = None
        self._title = ""
        self._summary = ""
        self._suggested_response = ""
        self._suggested_questions = []
        self._messages.clear()
        self._message_order.clear()
        self._message_seq.clear()
        self._topics.clear()
        self._topic_ids.clear()
        self._action_items.clear()
        self._canonical_ids.clear()
        self._client_ids.clear()

    # ------------------------------------------------------------------
    # Capture and transcription events
    # ------------------------------------------------------------------

    def _on_chunk(self, chunk: bytes) -> None:
        if self._transcriber is not None and self._transcriber.is_running():
            self._transcriber.feed(chunk)
        if self._session_id is None and self._session_task is None and not self._session_failed:
            self._session_task = self._spawn(self._create_session())

    def _on_status(self, status: RecorderStatus) -> None:
        self._changed()

    def _on_segment(self, segment: TranscribedSegment) -> None:
        self.add_transcribed_message(
            segment.text,
            speaker_type=self._current_speaker,
            speaker_name=segment.speaker_name,
            timestamp=segment.end_time,
        )

    async def _create_session(self) -> None:
        title = f"Conversation {datetime.now():%Y-%m-%d %H:%M:%S}"
        try:
            session = await self._storage.create_session(title)
        except StorageFailed as exc:
            logger.error("Could not create session: %s", exc)
            self._session_failed = True
            self._session_task = None
            self._notify(
                "Error creating session",
                "Could not start a new session. Please try again.",
                NoticeLevel.ERROR,
            )
            return
        self._session_task = None
        self._assign_session(session)
        await self._channel.join_session(session.id)
        self._kick_outbox()

    def _assign_session(self, session: Session) -> None:
        self._session_id = session.id
        self._title = session.title
        if session.summary and not self._summary:
            self._summary = session.summary
        for message_id, message in list(self._messages.items()):
            if message.session_id is None:
                self._messages[message_id] = replace(message, session_id=session.id)
        for topic_id, topic in list(self._topics.items()):
            if topic.session_id is None:
                self._topics[topic_id] = replace(topic, session_id=session.id)
        for item_id, item in list(self._action_items.items()):
            if item.session_id is None:
                self._action_items[item_id] = replace(item, session_id=session.id)
        logger.info("Session %d assigned (%s)", session.id, session.title)
        self._changed()

    # ------------------------------------------------------------------
    # Channel events
    # ------------------------------------------------------------------

    def _on_connection_status(self, frame: Mapping[str, Any]) -> None:
        connected = bool(frame.get("connected"))
        if connected == self._connected:
            return
        self._connected = connected
        if connected and self._session_id is not None:
            # the hub forgets a dropped channel's session
            self._spawn(self._channel.join_session(self._session_id))
        self._changed()

    def _entity(self, frame: Mapping[str, Any], message_type: MessageType, parser: Callable[[Any], Any]) -> Any:
        data = frame.get(ENTITY_KEYS[message_type])
        if not isinstance(data, Mapping):
            logger.warning("Dropping %s frame without entity", message_type.value)
            return None
        try:
            entity = parser(data)
        except ValueError as exc:
            logger.warning("Dropping malformed %s frame: %s", message_type.value, exc)
            return None
        if self._session_id is not None and entity.session_id not in (None, self._session_id):
            logger.debug("Ignoring %s for session %s", message_type.value, entity.session_id)
            return None
        return entity

    def _on_new_message(self, frame: Mapping[str, Any]) -> None:
        message = self._entity(frame, MessageType.NEW_MESSAGE, Message.from_dict)
        if message is None or message.id in self._messages:
            return
        provisional_id = self._client_ids.pop(message.client_id, None) if message.client_id else None
        if provisional_id is not None and provisional_id in self._messages:
            # our own message, relayed before storage answered
            self._reconcile_message(provisional_id, message)
            return
        self._insert_message(message)
        self._messages_changed()

    def _on_new_topic(self, frame: Mapping[str, Any]) -> None:
        topic = self._entity(frame, MessageType.NEW_TOPIC, Topic.from_dict)
        if topic is not None and self._merge_topic(topic):
            self._changed()

    def _on_new_action_item(self, frame: Mapping[str, Any]) -> None:
        item = self._entity(frame, MessageType.NEW_ACTION_ITEM, ActionItem.from_dict)
        if item is None or item.id in self._action_items:
            return
        self._action_items[item.id] = item
        if item.source_message_id is not None:
            self._promote_message(item.source_message_id)
        self._changed()

    def _on_updated_action_item(self, frame: Mapping[str, Any]) -> None:
        item = self._entity(frame, MessageType.UPDATED_ACTION_ITEM, ActionItem.from_dict)
        if item is None:
            return
        self._action_items[item.id] = item
        self._changed()

    def _on_session_data(self, frame: Mapping[str, Any]) -> None:
        session = frame.get("session")
        if not isinstance(session, Mapping):
            logger.warning("Dropping session_data frame without session")
            return
        try:
            session_id = Session.from_dict(session).id
        except ValueError as exc:
            logger.warning("Dropping malformed session_data frame: %s", exc)
            return
        if self._session_id is not None and session_id != self._session_id:
            logger.debug("Ignoring snapshot of session %d", session_id)
            return
        self._apply_snapshot(frame)

    def _apply_snapshot(self, snapshot: Mapping[str, Any]) -> None:
        """Merge a full session snapshot; stored entities replace local copies."""
        try:
            session = Session.from_dict(snapshot["session"])
            messages = [Message.from_dict(m) for m in snapshot.get("messages") or []]
            topics = [Topic.from_dict(t) for t in snapshot.get("topics") or []]
            items = [ActionItem.from_dict(a) for a in snapshot.get("actionItems") or []]
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Dropping malformed session snapshot: %s", exc)
            return

        self._session_id = session.id
        self._title = session.title
        if session.summary:
            self._summary = session.summary
        for message in messages:
            if message.id in self._messages:
                self._replace_message(message.id, message)
            else:
                self._insert_message(message)
        for topic in topics:
            self._merge_topic(topic)
        for item in items:
            self._action_items[item.id] = item
        logger.info("Session %d snapshot applied (%d messages)", session.id, len(messages))
        self._messages_changed()
        self._kick_outbox()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _insert_message(self, message: Message, seq: Optional[int] = None) -> None:
        if seq is None:
            seq = next(self._sequence)
        self._messages[message.id] = message
        self._message_seq[message.id] = seq
        bisect.insort(self._message_order, (message.timestamp, seq, message.id))

    def _remove_message(self, message_id: int) -> Optional[int]:
        message = self._messages.pop(message_id, None)
        seq = self._message_seq.pop(message_id, None)
        if message is not None and seq is not None:
            self._message_order.remove((message.timestamp, seq, message_id))
        return seq

    def _replace_message(self, old_id: int, message: Message) -> None:
        seq = self._remove_message(old_id)
        self._insert_message(message, seq)

    def _promote_message(self, message_id: int) -> None:
        message_id = self._canonical_ids.get(message_id, message_id)
        message = self._messages.get(message_id)
        if message is not None and not message.is_action_item:
            self._messages[message_id] = replace(message, is_action_item=True)

    def _reconcile_message(self, provisional_id: int, stored: Message) -> None:
        self._canonical_ids[provisional_id] = stored.id
        local = self._messages.get(provisional_id)
        if stored.id in self._messages:
            # the canonical echo won the race
            if local is not None:
                self._remove_message(provisional_id)
        elif local is not None:
            if local.is_action_item and not stored.is_action_item:
                stored = replace(stored, is_action_item=True)
            self._replace_message(provisional_id, stored)
        else:
            self._insert_message(stored)

        for item_id, item in list(self._action_items.items()):
            if item.source_message_id == provisional_id:
                self._action_items[item_id] = replace(item, source_message_id=stored.id)
        self._changed()

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------

    def _merge_topic(self, incoming: Topic) -> bool:
        """Merge a stored topic by label; returns True if the view changed."""
        key = topic_key(incoming.label)
        existing_id = self._topic_ids.get(key)
        if existing_id is None:
            self._topics[incoming.id] = incoming
            self._topic_ids[key] = incoming.id
            return True

        existing = self._topics[existing_id]
        merged_id = incoming.id if existing.id < 0 else existing.id
        merged = replace(existing, id=merged_id, weight=max(existing.weight, incoming.weight))
        if existing.session_id is None:
            merged = replace(merged, session_id=incoming.session_id)
        if merged == existing:
            return False
        if merged_id != existing_id:
            del self._topics[existing_id]
            self._canonical_ids[existing_id] = merged_id
        self._topics[merged_id] = merged
        self._topic_ids[key] = merged_id
        return True

    def _detect_topic(self, label: str, weight: int) -> None:
        label = label.strip()
        if not label:
            return
        weight = max(1, weight)
        key = topic_key(label)
        existing_id = self._topic_ids.get(key)
        if existing_id is None:
            topic = Topic(id=next(self._provisional_ids), session_id=self._session_id, label=label, weight=weight)
            self._topics[topic.id] = topic
            self._topic_ids[key] = topic.id
        else:
            existing = self._topics[existing_id]
            self._topics[existing_id] = replace(existing, weight=existing.weight + weight)
        self._submit(lambda session_id: self._persist_topic(label, weight, session_id))

    # ------------------------------------------------------------------
    # Action items
    # ------------------------------------------------------------------

    def _detect_action_item(self, text: str) -> None:
        text = text.strip()
        key = action_key(text)
        if not key or any(action_key(item.text) == key for item in self._action_items.values()):
            return
        item = ActionItem(id=next(self._provisional_ids), session_id=self._session_id, text=text)
        self._action_items[item.id] = item
        self._submit(lambda session_id: self._persist_action_item(item.id, session_id))

    def _reconcile_action_item(self, provisional_id: int, stored: ActionItem) -> None:
        self._canonical_ids[provisional_id] = stored.id
        local = self._action_items.pop(provisional_id, None)
        if stored.id not in self._action_items:
            if local is not None and local.completed != stored.completed:
                # toggled while the create was in flight
                stored = replace(stored, completed=local.completed)
                self._submit(lambda _session_id: self._persist_toggle(stored.id, local.completed))
            self._action_items[stored.id] = stored
        self._changed()

    # ------------------------------------------------------------------
    # Storage outbox
    # ------------------------------------------------------------------

    def _submit(self, op: PendingOp) -> None:
        self._outbox.append(op)
        self._kick_outbox()

    def _kick_outbox(self) -> None:
        if self._session_id is None or not self._outbox:
            return
        if self._outbox_task is None or self._outbox_task.done():
            self._outbox_task = self._spawn(self._drain_outbox())

    async def _drain_outbox(self) -> None:
        while self._outbox and self._session_id is not None:
            op = self._outbox.pop(0)
            try:
                await op(self._session_id)
            except StorageFailed as exc:
                logger.warning("Storage rejected a change; keeping it locally: %s", exc)
                self._notify("Sync error", "A change could not be saved and is only shown locally.", NoticeLevel.ERROR)

    async def _persist_message(self, provisional_id: int, session_id: int) -> None:
        message = self._messages.get(provisional_id)
        if message is None:
            return
        stored = await self._storage.create_message(
            session_id,
            message.text,
            message.speaker_type,
            speaker_name=message.speaker_name,
            timestamp=message.timestamp,
            is_action_item=message.is_action_item,
            client_id=message.client_id,
        )
        if message.client_id is not None:
            self._client_ids.pop(message.client_id, None)
        self._reconcile_message(provisional_id, stored)

    async def _persist_topic(self, label: str, weight: int, session_id: int) -> None:
        stored = await self._storage.upsert_topic(session_id, label, weight)
        if self._merge_topic(stored):
            self._changed()

    async def _persist_action_item(self, provisional_id: int, session_id: int) -> None:
        item = self._action_items.get(provisional_id)
        if item is None:
            return
        source_id = item.source_message_id
        if source_id is not None and source_id < 0:
            source_id = self._canonical_ids.get(source_id)
            if source_id is None:
                logger.warning("Source message of action item %d was never stored", provisional_id)
        stored = await self._storage.create_action_item(
            session_id,
            item.text,
            source_message_id=source_id,
            completed=item.completed,
        )
        self._reconcile_action_item(provisional_id, stored)

    async def _persist_toggle(self, item_id: int, completed: bool) -> None:
        stored = await self._storage.update_action_item(item_id, completed=completed)
        if stored is None:
            logger.warning("Action item %d no longer exists", item_id)
            return
        self._action_items[stored.id] = stored
        self._changed()

    async def _persist_summary(self, summary: str, session_id: int) -> None:
        await self._storage.update_session(session_id, summary=summary)

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    def _messages_changed(self) -> None:
        self._changed()
        self._refresh_dirty = True
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = self._spawn(self._refresh_loop())

    async def _refresh_loop(self) -> None:
        # coalesces bursts of message changes into one analysis per pass
        while self._refresh_dirty:
            self._refresh_dirty = False
            await self._refresh_derived()

    async def _refresh_derived(self) -> None:
        messages = self.messages
        if not messages:
            return
        history = history_payload(messages)
        summary, analysis, suggestion = await asyncio.gather(
            self._analyzer.summarize(history),
            self._analyzer.analyze(history),
            self._analyzer.suggest_response(history, messages[-1].text),
            return_exceptions=True,
        )

        if self._analysis_ok("summary", summary) and summary != self._summary:
            self._summary = summary
            self._submit(lambda session_id: self._persist_summary(summary, session_id))
        if self._analysis_ok("analysis", analysis):
            self._apply_analysis(analysis)
        if self._analysis_ok("response suggestion", suggestion):
            self._suggested_response = suggestion
        self._changed()

    def _apply_analysis(self, analysis: AnalysisResult) -> None:
        for detection in analysis.topics:
            self._detect_topic(detection.label, detection.weight)
        for text in analysis.action_items:
            self._detect_action_item(text)
        self._suggested_questions = list(analysis.suggested_questions)

    @staticmethod
    def _analysis_ok(what: str, result: Any) -> bool:
        if isinstance(result, AnalysisFailed):
            logger.warning("Keeping previous %s: %s", what, result)
            return False
        if isinstance(result, BaseException):
            logger.error("Unexpected %s failure", what, exc_info=result)
            return False
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", exc_info=task.exception())

    def _changed(self) -> None:
        self._events.emit(CoordinatorEvent.STATE_CHANGED, self)

    def _notify(self, title: str, description: str, level: NoticeLevel = NoticeLevel.INFO) -> None:
        self._events.emit(CoordinatorEvent.NOTICE, Notice(title, description, level))
