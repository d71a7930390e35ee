"""Answers the requests the server sends back to the client.

The server calls into the client for:

- ``tool.call``: run one of the session's tools
- ``permission.request``: ask the session's permission handler
- ``userInput.request``: ask the user a question
- ``hooks.invoke``: run a lifecycle hook

Each request runs in its own task (the JSON-RPC layer spawns it), so a slow
handler never blocks the reader. Plain-function handlers run in a worker
thread via ``asyncio.to_thread``; coroutine functions run on the loop.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

from copilot_engine.errors import RemoteError
from copilot_engine.logging import get_logger
from copilot_engine.protocol.jsonrpc import UNKNOWN_SESSION
from copilot_engine.session.permissions import (
    PERMISSION_KINDS,
    coerce_permission_result,
    denied_no_approval_rule,
)
from copilot_engine.session.tools import (
    ToolInvocation,
    ToolResult,
    error_result,
    normalize_tool_result,
    result_failure,
    unsupported_tool_result,
)

if TYPE_CHECKING:
    from copilot_engine.protocol.jsonrpc import JsonRpcConnection
    from copilot_engine.session.session import CopilotSession

_log = get_logger("bridge")

# hooks.invoke hookType -> SessionHooks field
HOOK_FIELDS = {
    "preToolUse": "on_pre_tool_use",
    "postToolUse": "on_post_tool_use",
    "userPromptSubmitted": "on_user_prompt_submitted",
    "sessionStart": "on_session_start",
    "sessionEnd": "on_session_end",
    "errorOccurred": "on_error_occurred",
}

SessionLookup = Callable[[str], "CopilotSession | None"]


@dataclass(frozen=True, slots=True)
class UserInputRequest:
    """A question the agent wants answered by the user."""

    question: str
    choices: list[str] | None = None
    allow_freeform: bool = True


async def call_handler(handler: Callable[..., Any], *args: Any) -> Any:
    """Run a user callback off the reader: coroutines on the loop, the rest in a thread."""
    if inspect.iscoroutinefunction(handler):
        return await handler(*args)
    result = await asyncio.to_thread(handler, *args)
    if inspect.isawaitable(result):
        result = await result
    return result


class InboundRequestBridge:
    """Routes server-to-client requests to the owning session's callbacks.

    Args:
        lookup: Returns the live session for an id, or None.
        tool_timeout: Seconds a tool handler may run before it is reported
            as failed.
    """

    def __init__(self, lookup: SessionLookup, *, tool_timeout: float = 120.0) -> None:
        self._lookup = lookup
        self.tool_timeout = tool_timeout

    def install(self, connection: JsonRpcConnection) -> None:
        connection.register_request_handler("tool.call", self.handle_tool_call)
        connection.register_request_handler("permission.request", self.handle_permission_request)
        connection.register_request_handler("userInput.request", self.handle_user_input_request)
        connection.register_request_handler("hooks.invoke", self.handle_hooks_invoke)

    # -- tools --------------------------------------------------------------

    async def handle_tool_call(self, params: dict[str, Any]) -> dict[str, Any]:
        session_id = params.get("sessionId", "")
        session = self._lookup(session_id)
        if session is None:
            raise RemoteError(UNKNOWN_SESSION, f"Unknown session: {session_id}")

        invocation = ToolInvocation(
            session_id=session_id,
            tool_call_id=params.get("toolCallId", ""),
            tool_name=params.get("toolName", ""),
            arguments=params.get("arguments"),
        )
        result = await self.invoke_tool(session, invocation)
        return {"result": result.to_wire()}

    async def invoke_tool(self, session: CopilotSession, invocation: ToolInvocation) -> ToolResult:
        """Run the session's handler for one call and normalize its result."""
        tool = session.get_tool(invocation.tool_name)
        if tool is None:
            _log.warning(
                "Session %s has no tool %r", invocation.session_id, invocation.tool_name
            )
            return unsupported_tool_result(invocation.tool_name)

        try:
            arguments = tool.prepare_arguments(invocation.arguments)
        except ValidationError as e:
            return result_failure(f"Invalid arguments: {e}", str(e))

        _log.debug("Calling tool %s (%s)", tool.name, invocation.tool_call_id)
        try:
            value = await asyncio.wait_for(
                call_handler(tool.handler, arguments, invocation), timeout=self.tool_timeout
            )
        except asyncio.TimeoutError:
            _log.warning("Tool %s timed out after %ss", tool.name, self.tool_timeout)
            return error_result(TimeoutError(f"Tool timed out after {self.tool_timeout}s"))
        except Exception as e:
            _log.warning("Tool %s raised: %s", tool.name, e)
            return error_result(e)

        return normalize_tool_result(value)

    # -- permissions --------------------------------------------------------

    async def handle_permission_request(self, params: dict[str, Any]) -> dict[str, Any]:
        session_id = params.get("sessionId", "")
        session = self._lookup(session_id)
        if session is None or session.permission_handler is None:
            return {"result": denied_no_approval_rule()}

        request = params.get("permissionRequest") or {}
        try:
            value = await call_handler(
                session.permission_handler, request, {"session_id": session_id}
            )
        except Exception:
            _log.exception("Permission handler error for session %s", session_id)
            return {"result": denied_no_approval_rule()}

        result = coerce_permission_result(value)
        if result is None:
            _log.warning("Invalid permission response for session %s: %r", session_id, value)
            return {"result": denied_no_approval_rule()}
        if result["kind"] not in PERMISSION_KINDS:
            _log.warning("Relaying unrecognized permission kind %r", result["kind"])

        _log.debug("Permission response for session %s: %s", session_id, result)
        return {"result": result}

    # -- user input ---------------------------------------------------------

    async def handle_user_input_request(self, params: dict[str, Any]) -> dict[str, Any]:
        session_id = params.get("sessionId", "")
        session = self._lookup(session_id)
        if session is None:
            raise RemoteError(UNKNOWN_SESSION, f"Unknown session: {session_id}")
        if session.user_input_handler is None:
            raise RemoteError(UNKNOWN_SESSION, "User input requested but no handler registered")

        request = UserInputRequest(
            question=params.get("question", ""),
            choices=params.get("choices"),
            allow_freeform=params.get("allowFreeform", True),
        )
        try:
            value = await call_handler(
                session.user_input_handler, request, {"session_id": session_id}
            )
        except Exception as e:
            _log.error("User input handler error for session %s: %s", session_id, e)
            raise RemoteError(UNKNOWN_SESSION, f"User input handler error: {e}") from e

        if isinstance(value, str):
            answer, was_freeform = value, True
        elif isinstance(value, dict):
            answer = value.get("answer", value.get("response"))
            was_freeform = value.get("was_freeform", value.get("wasFreeform", True))
        else:
            answer, was_freeform = None, True

        if not isinstance(answer, str) or not answer:
            _log.warning("Invalid user input response for session %s: %r", session_id, value)
            raise RemoteError(UNKNOWN_SESSION, "User input handler returned invalid answer")

        return {"answer": answer, "wasFreeform": bool(was_freeform)}

    # -- hooks --------------------------------------------------------------

    async def handle_hooks_invoke(self, params: dict[str, Any]) -> Any:
        session_id = params.get("sessionId", "")
        hook_type = params.get("hookType", "")
        session = self._lookup(session_id)
        if session is None or session.hooks is None:
            return None

        field_name = HOOK_FIELDS.get(hook_type)
        handler = getattr(session.hooks, field_name) if field_name else None
        if handler is None:
            return None

        try:
            output = await call_handler(handler, params.get("input"), {"session_id": session_id})
        except Exception:
            _log.exception("Hook handler error for session %s, hook %s", session_id, hook_type)
            return None

        if isinstance(output, BaseModel):
            return output.model_dump(by_alias=True, exclude_none=True, mode="json")
        return output
