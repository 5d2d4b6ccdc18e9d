"""
Tests for the wire protocol and the entity models.

Run with:
    pytest tests/test_protocol.py -v
"""

import json
from datetime import timezone

import pytest

from convo_assist.errors import MalformedMessage
from convo_assist.models.data_models import (
    ActionItem,
    AnalysisResult,
    Message,
    SpeakerType,
    Topic,
    parse_timestamp,
    topic_key,
)
from convo_assist.protocol import RELAY_TYPES, MessageType, decode_frame, encode_frame, known_type


class TestFrames:
    def test_encode_type_cannot_be_overridden(self):
        raw = encode_frame(MessageType.JOIN_SESSION, {"sessionId": 3, "type": "bogus"})
        assert json.loads(raw) == {"type": "join_session", "sessionId": 3}

    def test_encode_keeps_unicode(self):
        raw = encode_frame("new_topic", {"topic": {"topic": "회의"}})
        assert "회의" in raw

    @pytest.mark.parametrize("raw", [
        "not json",
        "[1, 2]",
        '"text"',
        '{"sessionId": 1}',
        '{"type": ""}',
        '{"type": 5}',
        b"\xff\xfe",
    ])
    def test_decode_rejects(self, raw):
        with pytest.raises(MalformedMessage):
            decode_frame(raw)

    def test_decode_bytes(self):
        assert decode_frame(b'{"type": "new_topic"}') == {"type": "new_topic"}

    def test_unknown_type_is_not_an_error(self):
        frame = decode_frame('{"type": "typing", "who": "other"}')
        assert known_type(frame["type"]) is None

    def test_relay_types(self):
        assert MessageType.JOIN_SESSION not in RELAY_TYPES
        assert MessageType.SESSION_DATA not in RELAY_TYPES
        assert MessageType.CONNECTION_STATUS not in RELAY_TYPES
        assert MessageType.UPDATED_ACTION_ITEM in RELAY_TYPES


class TestModels:
    def test_speaker_type_accepts_legacy_user(self):
        assert SpeakerType.parse("user") is SpeakerType.SELF
        assert SpeakerType.parse("other") is SpeakerType.OTHER
        with pytest.raises(ValueError):
            SpeakerType.parse("narrator")

    def test_parse_timestamp_is_utc(self):
        parsed = parse_timestamp("2024-05-01T10:00:00Z")
        assert parsed.tzinfo == timezone.utc
        assert parse_timestamp("2024-05-01T10:00:00").tzinfo == timezone.utc
        with pytest.raises(ValueError):
            parse_timestamp("")

    def test_message_from_wire(self):
        message = Message.from_dict({
            "id": "4", "sessionId": 2, "text": "Hi", "speakerType": "other", "timestamp": "2024-05-01T10:00:00Z",
        })
        assert message.id == 4
        assert message.session_id == 2
        assert message.is_action_item is False
        assert message.to_dict()["timestamp"] == "2024-05-01T10:00:00+00:00"

    @pytest.mark.parametrize("data", [
        {"sessionId": 1, "text": "Hi", "speakerType": "self"},
        {"id": True, "sessionId": 1, "text": "Hi", "speakerType": "self"},
        {"id": 1, "sessionId": 1, "text": 5, "speakerType": "self"},
        {"id": 1, "sessionId": 1, "text": "Hi"},
    ])
    def test_message_rejects(self, data):
        with pytest.raises(ValueError):
            Message.from_dict(data)

    def test_topic_validation(self):
        assert Topic.from_dict({"id": 1, "sessionId": 1, "topic": " Budget "}).label == "Budget"
        with pytest.raises(ValueError):
            Topic.from_dict({"id": 1, "sessionId": 1, "topic": "Budget", "weight": 0})
        with pytest.raises(ValueError):
            Topic.from_dict({"id": 1, "sessionId": 1, "topic": "  "})

    def test_topic_key_normalizes(self):
        assert topic_key("  Road   Map ") == topic_key("road map")

    def test_action_item_wire_names(self):
        item = ActionItem.from_dict({"id": 1, "sessionId": 2, "messageId": 3, "text": "Call Bob"})
        assert item.to_dict() == {"id": 1, "sessionId": 2, "messageId": 3, "text": "Call Bob", "completed": False}

    def test_analysis_result_skips_blank_entries(self):
        result = AnalysisResult.from_dict({
            "topics": [{"topic": "Hiring", "weight": 9}, {"topic": ""}, {"topic": "Pay", "weight": 0}],
            "actionItems": [{"text": "Send offer"}, {"text": "  "}, "loose string"],
            "suggestedQuestions": ["When can you start?", ""],
        })
        assert [(t.label, t.weight) for t in result.topics] == [("Hiring", 9), ("Pay", 1)]
        assert result.action_items == ["Send offer"]
        assert result.suggested_questions == ["When can you start?"]
