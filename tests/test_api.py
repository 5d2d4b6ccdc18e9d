"""
Tests for the FastAPI server: REST routes and the /ws session relay.

Uses FastAPI's TestClient so no network or uvicorn process is needed.

Run with:
    pytest tests/test_api.py -v
"""

import pytest
from fastapi.testclient import TestClient

from conftest import StubAnalyzer
from convo_assist.analysis.keyword import KeywordAnalyzer
from convo_assist.api.app import create_app
from convo_assist.storage.memory import MemoryStorage


@pytest.fixture
def client():
    return TestClient(create_app(storage=MemoryStorage(), analyzer=KeywordAnalyzer()))


def create_sessions(client, count):
    return [client.post("/api/sessions", json={"title": f"Session {n}"}).json()["id"] for n in range(1, count + 1)]


def join(ws, session_id):
    ws.send_json({"type": "join_session", "sessionId": session_id})
    snapshot = ws.receive_json()
    assert snapshot["type"] == "session_data"
    assert snapshot["session"]["id"] == session_id
    return snapshot


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["connections"] == 0
        assert "timestamp" in data


class TestSessions:
    def test_create_and_get(self, client):
        response = client.post("/api/sessions", json={"title": "Weekly sync"})
        assert response.status_code == 201
        session = response.json()
        assert session["title"] == "Weekly sync"
        assert session["summary"] == ""

        fetched = client.get(f"/api/sessions/{session['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["id"] == session["id"]

    def test_list_sessions(self, client):
        create_sessions(client, 3)
        response = client.get("/api/sessions")
        assert response.status_code == 200
        assert len(response.json()) == 3

    def test_update_summary(self, client):
        session_id = create_sessions(client, 1)[0]
        response = client.patch(f"/api/sessions/{session_id}", json={"summary": "Agreed on dates."})
        assert response.status_code == 200
        assert response.json()["summary"] == "Agreed on dates."

    def test_unknown_session_is_404(self, client):
        assert client.get("/api/sessions/999").status_code == 404
        assert client.patch("/api/sessions/999", json={"title": "x"}).status_code == 404
        assert client.get("/api/sessions/999/messages").status_code == 404

    def test_invalid_bodies_are_400(self, client):
        assert client.post("/api/sessions", json={}).status_code == 400
        assert client.post("/api/sessions", json={"title": "   "}).status_code == 400
        assert client.post("/api/sessions", content=b"not json",
                           headers={"content-type": "application/json"}).status_code == 400


class TestEntities:
    def test_message_round_trip(self, client):
        session_id = create_sessions(client, 1)[0]
        response = client.post("/api/messages", json={
            "sessionId": session_id,
            "text": "Can you share the docs?",
            "speakerType": "other",
            "timestamp": "2024-05-01T10:00:00Z",
        })
        assert response.status_code == 201
        message = response.json()
        assert message["speakerType"] == "other"
        assert message["isActionItem"] is False

        listed = client.get(f"/api/sessions/{session_id}/messages").json()
        assert [m["id"] for m in listed] == [message["id"]]

        flagged = client.patch(f"/api/messages/{message['id']}", json={"isActionItem": True})
        assert flagged.json()["isActionItem"] is True

    def test_message_validation(self, client):
        session_id = create_sessions(client, 1)[0]
        base = {"sessionId": session_id, "text": "Hi", "speakerType": "self"}
        assert client.post("/api/messages", json=dict(base, speakerType="narrator")).status_code == 400
        assert client.post("/api/messages", json=dict(base, sessionId="one")).status_code == 400
        assert client.post("/api/messages", json=dict(base, text="")).status_code == 400
        assert client.post("/api/messages", json=dict(base, timestamp="yesterday")).status_code == 400
        assert client.post("/api/messages", json=dict(base, clientId=7)).status_code == 400
        assert client.post("/api/messages", json=dict(base, sessionId=999)).status_code == 404
        assert client.patch("/api/messages/999", json={"isActionItem": True}).status_code == 404

    def test_topic_upsert_adds_weight(self, client):
        session_id = create_sessions(client, 1)[0]
        first = client.post("/api/topics", json={"sessionId": session_id, "topic": "Budget", "weight": 2}).json()
        second = client.post("/api/topics", json={"sessionId": session_id, "topic": " budget ", "weight": 3}).json()
        assert second["id"] == first["id"]
        assert second["weight"] == 5
        assert len(client.get(f"/api/sessions/{session_id}/topics").json()) == 1

    def test_action_item_create_and_toggle(self, client):
        session_id = create_sessions(client, 1)[0]
        message = client.post("/api/messages", json={
            "sessionId": session_id, "text": "Send the slides", "speakerType": "self",
        }).json()
        item = client.post("/api/action-items", json={
            "sessionId": session_id, "text": "Send the slides", "messageId": message["id"],
        })
        assert item.status_code == 201
        item = item.json()
        assert item["completed"] is False
        assert item["messageId"] == message["id"]

        messages = client.get(f"/api/sessions/{session_id}/messages").json()
        assert messages[0]["isActionItem"] is True

        toggled = client.patch(f"/api/action-items/{item['id']}", json={"completed": True})
        assert toggled.json()["completed"] is True
        assert client.patch("/api/action-items/999", json={"completed": True}).status_code == 404

    def test_action_item_foreign_message_rejected(self, client):
        first, second = create_sessions(client, 2)
        message = client.post("/api/messages", json={
            "sessionId": first, "text": "Hi", "speakerType": "self",
        }).json()
        response = client.post("/api/action-items", json={
            "sessionId": second, "text": "Follow up", "messageId": message["id"],
        })
        assert response.status_code == 400


class TestAnalysis:
    HISTORY = [
        {"speakerType": "other", "speakerName": None, "text": "We moved to kubernetes last year."},
        {"speakerType": "self", "speakerName": None, "text": "I can share the documentation."},
        {"speakerType": "other", "speakerName": None, "text": "Great, what was the hardest part?"},
    ]

    def test_analyze_text(self, client):
        response = client.post("/api/analyze/text", json={"messages": self.HISTORY})
        assert response.status_code == 200
        data = response.json()
        assert {"topic": "Kubernetes", "weight": 5} in data["topics"]
        assert data["actionItems"] == [{"text": "Share migration case study documentation"}]
        assert len(data["suggestedQuestions"]) == 3

    def test_summary_and_suggestion(self, client):
        summary = client.post("/api/analyze/summary", json={"messages": self.HISTORY}).json()
        assert "microservices" in summary["summary"]

        suggestion = client.post("/api/analyze/suggest-response", json={
            "messages": self.HISTORY, "lastMessage": "What was the biggest challenge?",
        }).json()
        assert suggestion["suggestion"].startswith("The biggest challenge")

    def test_assist(self, client):
        response = client.post("/api/analyze/assist", json={"messages": [], "prompt": "help me"})
        assert response.status_code == 200
        assert response.json()["response"].startswith("Try to provide specific examples")

    def test_bad_history_is_400(self, client):
        assert client.post("/api/analyze/text", json={"messages": "nope"}).status_code == 400
        assert client.post("/api/analyze/assist", json={"messages": []}).status_code == 400

    def test_analysis_failure_is_502(self):
        analyzer = StubAnalyzer()
        analyzer.fail = True
        client = TestClient(create_app(storage=MemoryStorage(), analyzer=analyzer))
        for path in ("/api/analyze/text", "/api/analyze/summary"):
            assert client.post(path, json={"messages": []}).status_code == 502


class TestRelay:
    """The /ws hub relays session events to exactly the joined channels."""

    def test_join_receives_snapshot(self, client):
        session_id = create_sessions(client, 1)[0]
        client.post("/api/topics", json={"sessionId": session_id, "topic": "Hiring"})
        with client.websocket_connect("/ws") as ws:
            snapshot = join(ws, session_id)
        assert snapshot["messages"] == []
        assert [t["topic"] for t in snapshot["topics"]] == ["Hiring"]
        assert snapshot["actionItems"] == []

    def test_relay_reaches_joined_channels_once(self, client):
        ids = create_sessions(client, 43)
        assert ids[41:] == [42, 43]
        frame = {
            "type": "new_message",
            "message": {"id": 1, "sessionId": 42, "text": "Hello", "speakerType": "self"},
        }
        with client.websocket_connect("/ws") as a, \
                client.websocket_connect("/ws") as b, \
                client.websocket_connect("/ws") as c:
            join(a, 42)
            join(b, 42)
            join(c, 43)

            a.send_json(frame)
            assert a.receive_json() == frame
            assert b.receive_json() == frame

            # the next frame each channel sees is its own rejoin snapshot, so nothing
            # was delivered twice and nothing leaked into session 43
            join(a, 42)
            join(b, 42)
            join(c, 43)

    def test_rest_writes_are_broadcast(self, client):
        first, second = create_sessions(client, 2)
        with client.websocket_connect("/ws") as joined, client.websocket_connect("/ws") as other:
            join(joined, first)
            join(other, second)

            message = client.post("/api/messages", json={
                "sessionId": first, "text": "Ship it Friday", "speakerType": "other",
            }).json()
            event = joined.receive_json()
            assert event == {"type": "new_message", "message": message}

            item = client.post("/api/action-items", json={"sessionId": first, "text": "Ship it"}).json()
            assert joined.receive_json() == {"type": "new_action_item", "actionItem": item}

            updated = client.patch(f"/api/action-items/{item['id']}", json={"completed": True}).json()
            assert joined.receive_json() == {"type": "updated_action_item", "actionItem": updated}

            topic = client.post("/api/topics", json={"sessionId": first, "topic": "Release"}).json()
            assert joined.receive_json() == {"type": "new_topic", "topic": topic}

            join(other, second)

    def test_relayed_message_echoes_client_id(self, client):
        session_id = create_sessions(client, 1)[0]
        with client.websocket_connect("/ws") as ws:
            join(ws, session_id)
            created = client.post("/api/messages", json={
                "sessionId": session_id, "text": "Hello there", "speakerType": "self", "clientId": "c-1",
            }).json()
            event = ws.receive_json()

        assert created["clientId"] == "c-1"
        assert event["message"]["clientId"] == "c-1"
        assert event["message"]["id"] == created["id"]

    def test_channel_switches_session(self, client):
        first, second = create_sessions(client, 2)
        with client.websocket_connect("/ws") as ws:
            join(ws, first)
            join(ws, second)
            client.post("/api/topics", json={"sessionId": first, "topic": "Old"})
            topic = client.post("/api/topics", json={"sessionId": second, "topic": "New"}).json()
            assert ws.receive_json() == {"type": "new_topic", "topic": topic}

    def test_write_after_channel_closed(self, client):
        session_id = create_sessions(client, 1)[0]
        with client.websocket_connect("/ws") as ws:
            join(ws, session_id)
            assert client.get("/health").json()["connections"] == 1
        response = client.post("/api/topics", json={"sessionId": session_id, "topic": "After"})
        assert response.status_code == 201
