"""Tests for the one-shot query helpers."""

from __future__ import annotations

from contextlib import aclosing
from typing import Any

import pytest

from copilot_engine.client import CopilotClient
from copilot_engine.errors import ConfigurationError
from copilot_engine.helpers import query, query_stream
from tests.mock_server import MockCopilotServer, MockPeer, slow_turn

TURN_TYPES = [
    "user.message",
    "assistant.turn_start",
    "assistant.message",
    "assistant.turn_end",
    "session.idle",
]


class TestQuery:
    """Tests for query."""

    async def test_temporary_session_on_given_client(
        self, client: CopilotClient, server: MockCopilotServer
    ) -> None:
        answer = await query("What is 2+2?", client=client, model="gpt-5")
        assert answer == "Mock response to: What is 2+2?"
        assert dict(server.requests)["session.create"]["model"] == "gpt-5"
        assert "session.destroy" in server.methods()
        assert client.sessions == {}

    async def test_private_client_is_stopped(self, server: MockCopilotServer) -> None:
        options = {"cli_url": server.url, "auto_restart": False}
        assert await query("hello", client_options=options) == "Mock response to: hello"
        assert "session.destroy" in server.methods()
        assert len(server.peers) == 1

    async def test_existing_session_stays_open(
        self, client: CopilotClient, server: MockCopilotServer
    ) -> None:
        session = await client.create_session()
        assert await query("one", session=session) == "Mock response to: one"
        assert await query("two", session=session) == "Mock response to: two"
        assert not session.destroyed
        assert server.methods().count("session.create") == 1
        assert "session.destroy" not in server.methods()

    async def test_turn_without_reply_returns_none(
        self, client: CopilotClient, server: MockCopilotServer
    ) -> None:
        async def silent_turn(
            mock: MockCopilotServer, peer: MockPeer, session_id: str, params: dict[str, Any]
        ) -> None:
            await mock.emit(peer, session_id, "session.idle")

        server.send_handler = silent_turn
        assert await query("anyone?", client=client) is None

    async def test_conflicting_arguments(self, client: CopilotClient) -> None:
        session = await client.create_session()
        with pytest.raises(ConfigurationError):
            await query("hi", session=session, model="gpt-5")
        with pytest.raises(ConfigurationError):
            await query("hi", client=client, client_options={"cli_url": "4000"})


class TestQueryStream:
    """Tests for query_stream."""

    async def test_yields_turn_and_destroys_session(
        self, client: CopilotClient, server: MockCopilotServer
    ) -> None:
        types = [
            event.type
            async for event in query_stream("stream me", client=client)
            if event.type != "session.start"
        ]
        assert types == TURN_TYPES
        assert "session.destroy" in server.methods()
        assert client.sessions == {}

    async def test_max_events_limits_stream(
        self, client: CopilotClient, server: MockCopilotServer
    ) -> None:
        server.send_handler = slow_turn(0.2)
        events = [event async for event in query_stream("hi", client=client, max_events=1)]
        assert len(events) == 1
        assert "session.destroy" in server.methods()

    async def test_closing_early_destroys_session(
        self, client: CopilotClient, server: MockCopilotServer
    ) -> None:
        server.send_handler = slow_turn(0.5)
        async with aclosing(query_stream("long story", client=client)) as events:
            async for _ in events:
                break
        assert "session.destroy" in server.methods()
        assert client.sessions == {}

    async def test_zero_max_events_sends_nothing(
        self, client: CopilotClient, server: MockCopilotServer
    ) -> None:
        assert [event async for event in query_stream("hi", client=client, max_events=0)] == []
        assert "session.create" not in server.methods()
