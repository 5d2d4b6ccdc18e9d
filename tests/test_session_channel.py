"""
Tests for the reconnecting session channel.

Tests:
1. Connect, dispatch and send
2. Bounded reconnection with the manual scheduler
3. Malformed and unknown frames
4. Explicit close

Run with:
    pytest tests/test_session_channel.py -v
"""

import pytest

from conftest import settle
from convo_assist.channel.session_channel import ConnectionState
from convo_assist.errors import TransportDisconnected
from convo_assist.protocol import MessageType

pytestmark = pytest.mark.asyncio

MESSAGE_FRAME = {
    "type": "new_message",
    "message": {"id": 1, "sessionId": 42, "text": "Hello", "speakerType": "other"},
}


class TestConnect:
    """Opening the connection and sending frames."""

    async def test_connect_publishes_status(self, channel, connector):
        statuses = []
        channel.subscribe(MessageType.CONNECTION_STATUS, statuses.append)

        assert await channel.connect() is True
        assert channel.state is ConnectionState.CONNECTED
        assert channel.is_connected
        assert statuses == [{"type": "connection_status", "connected": True}]
        assert connector.calls == 1

    async def test_join_session_frame(self, channel, connector):
        await channel.connect()
        assert await channel.join_session(42) is True
        assert connector.last.sent == [{"type": "join_session", "sessionId": 42}]

    async def test_send_while_disconnected_is_not_queued(self, channel, connector):
        """send() returns False and nothing is delivered after connecting."""
        assert await channel.send(MessageType.NEW_TOPIC, {"topic": {}}) is False
        await channel.connect()
        assert connector.last.sent == []

    async def test_send_failure_returns_false(self, channel, connector):
        await channel.connect()
        connector.last.closed = True
        assert await channel.send("new_topic", {"topic": {}}) is False

    async def test_transmit_raises_when_disconnected(self, channel, connector):
        with pytest.raises(TransportDisconnected) as info:
            await channel.transmit(MessageType.NEW_TOPIC, {"topic": {}})
        assert info.value.__cause__ is None

        await channel.connect()
        connector.last.closed = True
        with pytest.raises(TransportDisconnected) as info:
            await channel.transmit(MessageType.NEW_TOPIC, {"topic": {}})
        assert isinstance(info.value.__cause__, OSError)


class TestDispatch:
    """Incoming frames reach the handlers registered for their type."""

    async def test_dispatch_by_type(self, channel, connector):
        messages, topics = [], []
        channel.subscribe(MessageType.NEW_MESSAGE, messages.append)
        channel.subscribe(MessageType.NEW_TOPIC, topics.append)
        await channel.connect()

        connector.last.receive(MESSAGE_FRAME)
        await settle()
        assert messages == [MESSAGE_FRAME]
        assert topics == []

    async def test_malformed_frames_are_dropped(self, channel, connector):
        """Bad frames are skipped and the receive loop keeps going."""
        messages = []
        channel.subscribe(MessageType.NEW_MESSAGE, messages.append)
        await channel.connect()
        ws = connector.last

        ws.receive("not json {")
        ws.receive("[1, 2, 3]")
        ws.receive({"no_type": True})
        ws.receive({"type": "something_new", "value": 1})
        ws.receive(MESSAGE_FRAME)
        await settle()
        assert messages == [MESSAGE_FRAME]
        assert channel.is_connected

    async def test_handler_errors_are_isolated(self, channel, connector):
        received = []

        def broken(frame):
            raise ValueError("bad handler")

        channel.subscribe(MessageType.NEW_MESSAGE, broken)
        channel.subscribe(MessageType.NEW_MESSAGE, received.append)
        await channel.connect()

        connector.last.receive(MESSAGE_FRAME)
        await settle()
        assert received == [MESSAGE_FRAME]

    async def test_disposer_unsubscribes(self, channel, connector):
        received = []
        dispose = channel.subscribe(MessageType.NEW_MESSAGE, received.append)
        await channel.connect()
        dispose()

        connector.last.receive(MESSAGE_FRAME)
        await settle()
        assert received == []


class TestReconnect:
    """Bounded reconnection after a loss."""

    async def test_five_attempts_then_explicit_connect(self, channel, connector, scheduler):
        """Five retries two seconds apart, then silence until connect()."""
        connector.fail = True
        assert await channel.connect() is False
        assert connector.calls == 1
        assert channel.reconnect_pending

        scheduler.advance(1999)
        await settle()
        assert connector.calls == 1

        scheduler.advance(1)
        await settle()
        assert connector.calls == 2

        for expected_calls in range(3, 7):
            scheduler.advance(2000)
            await settle()
            assert connector.calls == expected_calls

        assert channel.reconnect_attempts == 5
        assert not channel.reconnect_pending
        scheduler.advance(60000)
        await settle()
        assert connector.calls == 6
        assert channel.state is ConnectionState.DISCONNECTED

        connector.fail = False
        assert await channel.connect() is True
        assert connector.calls == 7
        assert channel.reconnect_attempts == 0

    async def test_explicit_connect_resets_budget_after_failure(self, channel, connector, scheduler):
        """connect() after giving up starts a fresh budget of five retries."""
        connector.fail = True
        await channel.connect()
        for _ in range(5):
            scheduler.advance(2000)
            await settle()
        assert channel.reconnect_attempts == 5

        assert await channel.connect() is False
        assert channel.reconnect_attempts == 1
        assert channel.reconnect_pending

    async def test_lost_connection_reconnects(self, channel, connector, scheduler):
        """A transport error schedules a reconnect that restores the link."""
        statuses = []
        channel.subscribe(MessageType.CONNECTION_STATUS, statuses.append)
        await channel.connect()

        connector.last.drop()
        await settle()
        assert statuses[-1] == {"type": "connection_status", "connected": False, "error": True}
        assert channel.state is ConnectionState.DISCONNECTED
        assert channel.reconnect_pending

        scheduler.advance(2000)
        await settle()
        assert channel.is_connected
        assert connector.calls == 2
        assert channel.reconnect_attempts == 0
        assert statuses[-1] == {"type": "connection_status", "connected": True}

    async def test_peer_close_reconnects(self, channel, connector, scheduler):
        await channel.connect()
        await connector.last.close()
        await settle()
        assert channel.reconnect_pending

        scheduler.advance(2000)
        await settle()
        assert channel.is_connected


class TestClose:
    """Explicit close never reconnects."""

    async def test_close(self, channel, connector, scheduler):
        statuses = []
        channel.subscribe(MessageType.CONNECTION_STATUS, statuses.append)
        await channel.connect()
        ws = connector.last

        await channel.close()
        await settle()
        assert ws.closed
        assert channel.state is ConnectionState.DISCONNECTED
        assert not channel.reconnect_pending
        assert statuses[-1] == {"type": "connection_status", "connected": False}

        scheduler.advance(10000)
        await settle()
        assert connector.calls == 1

    async def test_close_cancels_pending_reconnect(self, channel, connector, scheduler):
        connector.fail = True
        await channel.connect()
        await channel.close()

        scheduler.advance(2000)
        await settle()
        assert connector.calls == 1
