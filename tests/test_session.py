"""Tests for CopilotSession: sending, waiting, streaming and teardown."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from copilot_engine.client import CopilotClient
from copilot_engine.errors import (
    RemoteError,
    SendTimeoutError,
    SessionDestroyedError,
    SessionError,
)
from copilot_engine.session.events import SessionEvent
from copilot_engine.session.session import SessionState
from tests.mock_server import MockCopilotServer, MockPeer, scripted_turn, slow_turn


class TestSendAndWait:
    """Tests for send_and_wait."""

    async def test_returns_last_assistant_message(self, client: CopilotClient) -> None:
        session = await client.create_session()
        reply = await session.send_and_wait("hello")
        assert reply is not None
        assert reply.type == "assistant.message"
        assert reply.data["content"] == "Mock response to: hello"
        assert session.state is SessionState.IDLE

    async def test_send_params(self, client: CopilotClient, server: MockCopilotServer) -> None:
        session = await client.create_session()
        await session.send_and_wait(
            "look at this",
            attachments=[{"type": "file", "path": "/src/app.py"}],
            mode="enqueue",
        )
        params = dict(server.requests)["session.send"]
        assert params == {
            "sessionId": session.session_id,
            "prompt": "look at this",
            "attachments": [{"type": "file", "path": "/src/app.py"}],
            "mode": "enqueue",
        }

    async def test_sends_on_one_session_are_serialized(
        self, client: CopilotClient, server: MockCopilotServer
    ) -> None:
        log: list[str] = []

        async def logged_turn(
            mock: MockCopilotServer, peer: MockPeer, session_id: str, params: dict[str, Any]
        ) -> None:
            log.append(f"start {params['prompt']}")
            await asyncio.sleep(0.05)
            log.append(f"end {params['prompt']}")
            await scripted_turn(mock, peer, session_id, params)

        server.send_handler = logged_turn
        session = await client.create_session()
        first, second = await asyncio.gather(
            session.send_and_wait("one"), session.send_and_wait("two")
        )
        assert log == ["start one", "end one", "start two", "end two"]
        assert first.data["content"] == "Mock response to: one"
        assert second.data["content"] == "Mock response to: two"

    async def test_turn_finished_before_send_returns_leaves_session_idle(
        self, client: CopilotClient, server: MockCopilotServer
    ) -> None:
        server.turn_before_reply = True
        session = await client.create_session()
        await session.send("quick")
        await client.ping()
        assert "session.idle" in [event.type for event in session.history]
        assert session.state is SessionState.IDLE

    async def test_rejected_send_restores_state(
        self, client: CopilotClient, server: MockCopilotServer
    ) -> None:
        session = await client.create_session()
        server.sessions.pop(session.session_id)
        with pytest.raises(RemoteError):
            await session.send("nobody home")
        assert session.state is SessionState.IDLE

    async def test_different_sessions_run_in_parallel(
        self, client: CopilotClient, server: MockCopilotServer
    ) -> None:
        server.send_handler = slow_turn(0.2)
        a = await client.create_session()
        b = await client.create_session()
        loop = asyncio.get_running_loop()
        started = loop.time()
        await asyncio.gather(a.send_and_wait("a"), b.send_and_wait("b"))
        assert loop.time() - started < 0.39

    async def test_timeout_leaves_session_usable(
        self, client: CopilotClient, server: MockCopilotServer
    ) -> None:
        server.send_handler = slow_turn(0.5)
        session = await client.create_session()
        with pytest.raises(SendTimeoutError) as exc_info:
            await session.send_and_wait("slow", timeout=0.01)
        assert isinstance(exc_info.value, TimeoutError)
        assert "abort" not in server.methods()
        assert client.hub.subscriber_count(session.session_id) == 0

        server.send_handler = scripted_turn
        reply = await session.send_and_wait("fast")
        assert reply is not None
        assert reply.data["content"] == "Mock response to: fast"

    async def test_session_error_raises(
        self, client: CopilotClient, server: MockCopilotServer
    ) -> None:
        async def failing_turn(
            mock: MockCopilotServer, peer: MockPeer, session_id: str, params: dict[str, Any]
        ) -> None:
            await mock.emit(
                peer, session_id, "session.error", {"errorType": "model", "message": "Rate limited"}
            )

        server.send_handler = failing_turn
        session = await client.create_session()
        with pytest.raises(SessionError, match="Rate limited") as exc_info:
            await session.send_and_wait("hi")
        assert exc_info.value.event.data["errorType"] == "model"

    async def test_turn_without_assistant_message_returns_none(
        self, client: CopilotClient, server: MockCopilotServer
    ) -> None:
        async def silent_turn(
            mock: MockCopilotServer, peer: MockPeer, session_id: str, params: dict[str, Any]
        ) -> None:
            await mock.emit(peer, session_id, "session.idle")

        server.send_handler = silent_turn
        session = await client.create_session()
        assert await session.send_and_wait("hi") is None


class TestSendStream:
    """Tests for send_stream."""

    async def test_stream_ends_after_idle(self, client: CopilotClient) -> None:
        session = await client.create_session()
        stream = await session.send_stream("stream me")
        assert stream.message_id
        types = [event.type async for event in stream if event.type != "session.start"]
        assert types == [
            "user.message",
            "assistant.turn_start",
            "assistant.message",
            "assistant.turn_end",
            "session.idle",
        ]
        assert stream.closed

    async def test_stream_holds_send_lock_until_done(
        self, client: CopilotClient, server: MockCopilotServer
    ) -> None:
        server.send_handler = slow_turn(0.1)
        session = await client.create_session()
        stream = await session.send_stream("first")
        second = asyncio.create_task(session.send("second"))
        await asyncio.sleep(0.05)
        assert not second.done()
        assert server.methods().count("session.send") == 1

        async for _ in stream:
            pass
        await asyncio.wait_for(second, 1)
        assert server.methods().count("session.send") == 2

    async def test_closing_stream_early_releases_session(
        self, client: CopilotClient, server: MockCopilotServer
    ) -> None:
        server.send_handler = slow_turn(0.5)
        session = await client.create_session()
        async with await session.send_stream("first") as stream:
            async for event in stream:
                if event.type == "user.message":
                    break
        assert stream.closed
        await asyncio.wait_for(session.send("next"), 1)

    async def test_stream_timeout_ends_with_synthetic_error(
        self, client: CopilotClient, server: MockCopilotServer
    ) -> None:
        server.send_handler = slow_turn(1.0)
        session = await client.create_session()
        stream = await session.send_stream("slow", timeout=0.05)
        events = [event async for event in stream]
        assert events[-1].type == "session.error"
        assert events[-1].data["errorType"] == "timeout"
        await asyncio.wait_for(session.send("next"), 1)


class TestSessionQueries:
    """Tests for the per-session server calls."""

    async def test_abort(self, client: CopilotClient, server: MockCopilotServer) -> None:
        session = await client.create_session()
        seen = asyncio.Event()
        session.on(lambda event: seen.set() if event.type == "abort" else None)
        await session.abort()
        await asyncio.wait_for(seen.wait(), 1)
        assert ("session.abort", {"sessionId": session.session_id}) in server.requests

    async def test_get_messages(self, client: CopilotClient) -> None:
        session = await client.create_session()
        messages = await session.get_messages()
        assert [m.type for m in messages] == ["user.message", "assistant.message"]
        assert all(m.session_id == session.session_id for m in messages)

    async def test_models(self, client: CopilotClient) -> None:
        session = await client.create_session(model="gpt-5")
        assert await session.get_current_model() == "gpt-5"
        assert await session.switch_model("claude-sonnet-4.5") == "claude-sonnet-4.5"
        assert await session.get_current_model() == "claude-sonnet-4.5"

    async def test_history_and_callbacks(self, client: CopilotClient) -> None:
        session = await client.create_session()
        received: list[SessionEvent] = []
        remove = session.on(received.append)
        await session.send_and_wait("hi")
        remove()
        assert [e.type for e in received][-1] == "session.idle"
        history_types = [e.type for e in session.history]
        assert history_types[-5:] == [e.type for e in received][-5:]


class TestDestroy:
    """Tests for session teardown."""

    async def test_destroy(self, client: CopilotClient, server: MockCopilotServer) -> None:
        session = await client.create_session()
        subscription = session.subscribe()
        await session.destroy()
        assert session.destroyed
        assert subscription.closed
        assert client.get_session(session.session_id) is None
        assert "session.destroy" in server.methods()
        with pytest.raises(SessionDestroyedError):
            await session.send("too late")

    async def test_destroy_twice_is_harmless(
        self, client: CopilotClient, server: MockCopilotServer
    ) -> None:
        session = await client.create_session()
        await session.destroy()
        await session.destroy()
        assert server.methods().count("session.destroy") == 1

    async def test_context_manager_destroys(self, client: CopilotClient) -> None:
        async with await client.create_session() as session:
            await session.send_and_wait("hi")
        assert session.destroyed
