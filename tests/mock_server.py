"""In-process stand-in for the Copilot CLI server.

Speaks the framed JSON-RPC protocol over a local TCP socket so a real
CopilotClient can attach to it with ``cli_url``. Tests can replace the
behaviour of session.send, issue server-to-client requests (tool.call,
permission.request, ...) and drop connections.
"""

from __future__ import annotations

import asyncio
import itertools
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from copilot_engine.errors import FramingError
from copilot_engine.protocol.framing import read_message, write_message

PROTOCOL_VERSION = 2


class MockPeer:
    """One accepted client connection."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self._ids = itertools.count(1000)
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def send(self, message: dict[str, Any]) -> None:
        async with self._lock:
            await write_message(self.writer, message)

    async def notify(self, method: str, params: dict[str, Any]) -> None:
        await self.send({"jsonrpc": "2.0", "method": method, "params": params})

    async def request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        """Send a request to the client and return the raw response message."""
        request_id = next(self._ids)
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        await self.send({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
        return await future

    def resolve(self, message: dict[str, Any]) -> None:
        future = self._pending.pop(message["id"], None)
        if future is not None and not future.done():
            future.set_result(message)

    def close(self) -> None:
        self.writer.close()


SendHandler = Callable[["MockCopilotServer", MockPeer, str, dict[str, Any]], Awaitable[None]]


class MockCopilotServer:
    """Minimal Copilot CLI server.

    Attributes:
        requests: Every (method, params) received, in order.
        sessions: Known session ids mapped to the params they were created with.
        send_handler: Coroutine run after each session.send is accepted;
            defaults to a short scripted turn.
        turn_before_reply: Run send_handler to completion before answering
            session.send, so the whole turn reaches the client first.
    """

    def __init__(self) -> None:
        self.requests: list[tuple[str, dict[str, Any]]] = []
        self.sessions: dict[str, dict[str, Any]] = {}
        self.protocol_version: int | None = PROTOCOL_VERSION
        self.send_handler: SendHandler = scripted_turn
        self.selected_model: str | None = None
        self.models_calls = 0
        self.turn_before_reply = False
        self.foreground: str | None = None
        self.peers: list[MockPeer] = []
        self._server: asyncio.Server | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._message_ids = itertools.count(1)

    @property
    def port(self) -> int:
        assert self._server is not None
        return self._server.sockets[0].getsockname()[1]

    @property
    def url(self) -> str:
        return f"127.0.0.1:{self.port}"

    @property
    def peer(self) -> MockPeer:
        """The most recent connection."""
        return self.peers[-1]

    def methods(self) -> list[str]:
        return [method for method, _ in self.requests]

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._accept, "127.0.0.1", 0)

    async def stop(self) -> None:
        for peer in self.peers:
            peer.close()
        for task in list(self._tasks):
            task.cancel()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    def drop_connections(self) -> None:
        for peer in self.peers:
            peer.close()

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def emit(
        self,
        peer: MockPeer,
        session_id: str,
        event_type: str,
        data: dict[str, Any] | None = None,
        **extra: Any,
    ) -> None:
        event = {
            "id": str(uuid.uuid4()),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "parentId": None,
            "type": event_type,
            "data": data or {},
            **extra,
        }
        await peer.notify("session.event", {"sessionId": session_id, "event": event})

    # -- connection handling --------------------------------------------------

    async def _accept(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = MockPeer(reader, writer)
        self.peers.append(peer)
        try:
            while True:
                message = await read_message(reader)
                if message is None:
                    break
                if "method" not in message:
                    peer.resolve(message)
                elif "id" in message:
                    self.spawn(self._answer(peer, message))
        except (ConnectionError, FramingError):
            pass
        finally:
            writer.close()

    async def _answer(self, peer: MockPeer, message: dict[str, Any]) -> None:
        method = message["method"]
        params = message.get("params") or {}
        self.requests.append((method, params))

        handler = getattr(self, "_on_" + method.replace(".", "_"), None)
        if handler is None:
            response = {"error": {"code": -32601, "message": f"Method not found: {method}"}}
        else:
            try:
                response = {"result": await handler(peer, params)}
            except _RpcFailure as e:
                response = {"error": {"code": e.code, "message": e.message}}
        try:
            await peer.send({"jsonrpc": "2.0", "id": message["id"], **response})
        except ConnectionError:
            pass

    # -- methods ----------------------------------------------------------------

    async def _on_ping(self, peer: MockPeer, params: dict[str, Any]) -> dict[str, Any]:
        result: dict[str, Any] = {
            "message": f"pong: {params.get('message', '')}",
            "timestamp": 1700000000000,
        }
        if self.protocol_version is not None:
            result["protocolVersion"] = self.protocol_version
        return result

    async def _on_status_get(self, peer: MockPeer, params: dict[str, Any]) -> dict[str, Any]:
        return {"version": "0.0.400", "protocolVersion": self.protocol_version}

    async def _on_auth_getStatus(self, peer: MockPeer, params: dict[str, Any]) -> dict[str, Any]:
        return {"isAuthenticated": True, "authType": "user", "login": "octocat"}

    async def _on_models_list(self, peer: MockPeer, params: dict[str, Any]) -> dict[str, Any]:
        self.models_calls += 1
        await asyncio.sleep(0.01)
        return {
            "models": [
                {
                    "id": "gpt-5",
                    "name": "GPT-5",
                    "capabilities": {"supports": {"vision": True}, "limits": {}},
                    "policy": {"state": "enabled"},
                },
                {"id": "claude-sonnet-4.5", "name": "Claude Sonnet 4.5"},
            ]
        }

    async def _on_tools_list(self, peer: MockPeer, params: dict[str, Any]) -> dict[str, Any]:
        return {"tools": [{"name": "bash", "namespacedName": "builtin/bash"}]}

    async def _on_account_getQuota(
        self, peer: MockPeer, params: dict[str, Any]
    ) -> dict[str, Any]:
        return {
            "quotaSnapshots": {
                "chat": {"entitlementRequests": 300, "usedRequests": 12, "remainingPercentage": 96}
            }
        }

    async def _on_session_create(self, peer: MockPeer, params: dict[str, Any]) -> dict[str, Any]:
        session_id = params.get("sessionId") or f"session-{uuid.uuid4().hex[:8]}"
        self.sessions[session_id] = params
        self.spawn(self._announce(peer, session_id, params))
        return {"sessionId": session_id, "workspacePath": f"/tmp/{session_id}"}

    async def _announce(self, peer: MockPeer, session_id: str, params: dict[str, Any]) -> None:
        await asyncio.sleep(0.01)
        selected = self.selected_model or params.get("model") or "gpt-5"
        await self.emit(peer, session_id, "session.start", {"selectedModel": selected})

    async def _on_session_resume(self, peer: MockPeer, params: dict[str, Any]) -> dict[str, Any]:
        session_id = params["sessionId"]
        if session_id not in self.sessions:
            raise _RpcFailure(-32001, f"Session not found: {session_id}")
        self.sessions[session_id] = params
        return {"sessionId": session_id, "workspacePath": f"/tmp/{session_id}"}

    async def _on_session_send(self, peer: MockPeer, params: dict[str, Any]) -> dict[str, Any]:
        session_id = params["sessionId"]
        if session_id not in self.sessions:
            raise _RpcFailure(-32001, f"Unknown session: {session_id}")
        if self.turn_before_reply:
            await self.send_handler(self, peer, session_id, params)
        else:
            self.spawn(self.send_handler(self, peer, session_id, params))
        return {"messageId": f"msg-{next(self._message_ids)}"}

    async def _on_session_abort(self, peer: MockPeer, params: dict[str, Any]) -> dict[str, Any]:
        await self.emit(peer, params["sessionId"], "abort", {"reason": "user"})
        return {}

    async def _on_session_destroy(self, peer: MockPeer, params: dict[str, Any]) -> dict[str, Any]:
        return {}

    async def _on_session_list(self, peer: MockPeer, params: dict[str, Any]) -> dict[str, Any]:
        cwd = (params.get("filter") or {}).get("cwd")
        sessions = [
            {
                "sessionId": session_id,
                "startTime": "2026-01-01T10:00:00Z",
                "modifiedTime": "2026-01-01T11:00:00Z",
                "summary": f"Summary of {session_id}",
                "isRemote": False,
                "context": {"cwd": created.get("workingDirectory", "/work")},
            }
            for session_id, created in self.sessions.items()
        ]
        if cwd is not None:
            sessions = [s for s in sessions if s["context"]["cwd"] == cwd]
        return {"sessions": sessions}

    async def _on_session_delete(self, peer: MockPeer, params: dict[str, Any]) -> dict[str, Any]:
        session_id = params["sessionId"]
        if self.sessions.pop(session_id, None) is None:
            return {"success": False, "error": f"Session not found: {session_id}"}
        return {"success": True}

    async def _on_session_getLastId(
        self, peer: MockPeer, params: dict[str, Any]
    ) -> dict[str, Any]:
        return {"sessionId": next(reversed(self.sessions), None)}

    async def _on_session_getForeground(
        self, peer: MockPeer, params: dict[str, Any]
    ) -> dict[str, Any]:
        return {"sessionId": self.foreground}

    async def _on_session_setForeground(
        self, peer: MockPeer, params: dict[str, Any]
    ) -> dict[str, Any]:
        session_id = params["sessionId"]
        if session_id not in self.sessions:
            return {"success": False, "error": f"Session not found: {session_id}"}
        self.foreground = session_id
        return {"success": True}

    async def _on_session_getMessages(
        self, peer: MockPeer, params: dict[str, Any]
    ) -> dict[str, Any]:
        return {
            "events": [
                {"id": "e1", "type": "user.message", "data": {"content": "hi"}},
                {"id": "e2", "type": "assistant.message", "data": {"content": "hello"}},
            ]
        }

    async def _on_session_model_getCurrent(
        self, peer: MockPeer, params: dict[str, Any]
    ) -> dict[str, Any]:
        return {"modelId": self.sessions.get(params["sessionId"], {}).get("model", "gpt-5")}

    async def _on_session_model_switchTo(
        self, peer: MockPeer, params: dict[str, Any]
    ) -> dict[str, Any]:
        self.sessions[params["sessionId"]]["model"] = params["modelId"]
        return {"modelId": params["modelId"]}


class _RpcFailure(Exception):
    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


async def scripted_turn(
    server: MockCopilotServer, peer: MockPeer, session_id: str, params: dict[str, Any]
) -> None:
    """user.message, one assistant.message echoing the prompt, session.idle."""
    prompt = params.get("prompt", "")
    await server.emit(peer, session_id, "user.message", {"content": prompt})
    await server.emit(peer, session_id, "assistant.turn_start", {"turnId": "0"})
    await server.emit(
        peer,
        session_id,
        "assistant.message",
        {"messageId": str(uuid.uuid4()), "content": f"Mock response to: {prompt}"},
    )
    await server.emit(peer, session_id, "assistant.turn_end", {"turnId": "0"})
    await server.emit(peer, session_id, "session.idle", {})


def slow_turn(delay: float) -> SendHandler:
    """A scripted turn that goes idle only after delay seconds."""

    async def handler(
        server: MockCopilotServer, peer: MockPeer, session_id: str, params: dict[str, Any]
    ) -> None:
        await server.emit(peer, session_id, "user.message", {"content": params.get("prompt")})
        await asyncio.sleep(delay)
        await scripted_turn(server, peer, session_id, params)

    return handler
