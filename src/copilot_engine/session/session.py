"""A conversation session on the CLI server.

Sends on one session are serialized: a per-session lock is held while a
message is being accepted (``send``), until the turn is over
(``send_and_wait``), or until the stream reaches its terminal event
(``send_stream``). Different sessions never wait on each other.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

from copilot_engine.config.schema import SessionConfig, attachments_to_wire
from copilot_engine.errors import SendTimeoutError, SessionDestroyedError, SessionError
from copilot_engine.logging import get_logger
from copilot_engine.session.events import EventType, SessionEvent, synthetic_error
from copilot_engine.session.hub import EventCallback, EventTransform, Subscription
from copilot_engine.session.tools import ToolDefinition

if TYPE_CHECKING:
    from copilot_engine.client import CopilotClient
    from copilot_engine.config.schema import SessionHooks

_log = get_logger("session")

DEFAULT_WAIT_TIMEOUT = 180.0
DESTROY_TIMEOUT = 5.0

SendMode = Literal["enqueue", "immediate"]

_WAIT_EVENT_TYPES = frozenset(
    {
        EventType.ASSISTANT_MESSAGE.value,
        EventType.SESSION_IDLE.value,
        EventType.SESSION_ERROR.value,
    }
)


class SessionState(Enum):
    IDLE = "idle"
    BUSY = "busy"


def _is_terminal(event: SessionEvent) -> bool:
    return event.is_terminal


def _keep_for_wait(event: SessionEvent) -> SessionEvent | None:
    return event if event.type in _WAIT_EVENT_TYPES else None


class EventStream:
    """Events of one streamed send, ending after session.idle or session.error.

    Use as an async iterator; ``aclose()`` (or leaving ``async with``)
    stops the stream early and releases the session for the next send.
    """

    def __init__(
        self,
        session: CopilotSession,
        subscription: Subscription,
        message_id: str,
        *,
        timeout: float | None = None,
    ) -> None:
        self.session = session
        self.message_id = message_id
        self._subscription = subscription
        self._timer: asyncio.TimerHandle | None = None
        if timeout is not None:
            self._timer = asyncio.get_running_loop().call_later(timeout, self._expire, timeout)
            subscription.add_close_callback(lambda _: self._cancel_timer())

    @property
    def closed(self) -> bool:
        return self._subscription.closed

    def _expire(self, timeout: float) -> None:
        self._timer = None
        _log.debug("Stream for session %s timed out after %ss", self.session.session_id, timeout)
        self._subscription.deliver(
            synthetic_error(
                self.session.session_id,
                f"Timed out after {timeout}s waiting for session to go idle",
                error_type="timeout",
            )
        )

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def aclose(self) -> None:
        self.session._hub.unsubscribe(self.session.session_id, self._subscription)

    def __aiter__(self) -> EventStream:
        return self

    async def __anext__(self) -> SessionEvent:
        event = await self._subscription.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> EventStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


class CopilotSession:
    """Handle for one session, created by CopilotClient.create_session/resume_session.

    Attributes:
        session_id: Server-side session id.
        workspace_path: Session workspace directory reported by the server.
        config: The options the session was created with.
    """

    def __init__(
        self,
        client: CopilotClient,
        session_id: str,
        config: SessionConfig,
        *,
        workspace_path: str | None = None,
    ) -> None:
        self.session_id = session_id
        self.config = config
        self.workspace_path = workspace_path
        self._client = client
        self._hub = client.hub
        self._tools: dict[str, ToolDefinition] = {tool.name: tool for tool in config.tools}
        self._send_lock = asyncio.Lock()
        self._history: list[SessionEvent] = []
        self._state = SessionState.IDLE
        self._destroyed = False

    def __repr__(self) -> str:
        return f"CopilotSession({self.session_id!r}, state={self._state.value})"

    # -- callbacks used by the bridge ----------------------------------------

    @property
    def permission_handler(self) -> Callable[..., Any] | None:
        return self.config.on_permission_request

    @property
    def user_input_handler(self) -> Callable[..., Any] | None:
        return self.config.on_user_input_request

    @property
    def hooks(self) -> SessionHooks | None:
        return self.config.hooks

    def get_tool(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    @property
    def tools(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    # -- state ---------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def history(self) -> list[SessionEvent]:
        """Every event received for this session, oldest first."""
        return list(self._history)

    def _record(self, event: SessionEvent) -> None:
        """Called by the client for each inbound event, before fan-out."""
        self._history.append(event)
        if event.type in (EventType.USER_MESSAGE.value, EventType.ASSISTANT_TURN_START.value):
            self._state = SessionState.BUSY
        elif event.is_terminal:
            self._state = SessionState.IDLE

    def _mark_destroyed(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self._state = SessionState.IDLE
        self._hub.close_session(self.session_id)

    def _ensure_alive(self) -> None:
        if self._destroyed:
            raise SessionDestroyedError(f"Session {self.session_id} has been destroyed")

    # -- events --------------------------------------------------------------

    def subscribe(
        self,
        *,
        capacity: int | None = None,
        transform: EventTransform | None = None,
    ) -> Subscription:
        """Subscribe to this session's events from now on."""
        self._ensure_alive()
        return self._hub.subscribe(self.session_id, capacity=capacity, transform=transform)

    def unsubscribe(self, subscription: Subscription) -> None:
        self._hub.unsubscribe(self.session_id, subscription)

    def on(self, callback: EventCallback) -> Callable[[], None]:
        """Register a callback for every event.

        The callback runs on the connection's reader task and must not block.

        Returns:
            Unsubscribe function - call it to remove the callback
        """
        self._ensure_alive()
        return self._hub.add_callback(self.session_id, callback)

    # -- sending -------------------------------------------------------------

    async def _send_message(
        self,
        prompt: str,
        attachments: list[Any] | None,
        mode: SendMode | None,
    ) -> str:
        params: dict[str, Any] = {"sessionId": self.session_id, "prompt": prompt}
        if attachments:
            params["attachments"] = attachments_to_wire(attachments)
        if mode is not None:
            params["mode"] = mode
        # Busy before the call: the turn's events may be read before it returns
        previous, self._state = self._state, SessionState.BUSY
        try:
            result = await self._client._request("session.send", params)
        except BaseException:
            self._state = previous
            raise
        return (result or {}).get("messageId", "")

    async def send(
        self,
        prompt: str,
        *,
        attachments: list[Any] | None = None,
        mode: SendMode | None = None,
    ) -> str:
        """Send a message and return its id once the server has accepted it."""
        self._ensure_alive()
        async with self._send_lock:
            self._ensure_alive()
            return await self._send_message(prompt, attachments, mode)

    async def send_and_wait(
        self,
        prompt: str,
        *,
        attachments: list[Any] | None = None,
        mode: SendMode | None = None,
        timeout: float = DEFAULT_WAIT_TIMEOUT,
    ) -> SessionEvent | None:
        """Send a message and wait until the session is idle again.

        Returns:
            The last assistant.message event of the turn, or None if the
            turn produced no assistant message.

        Raises:
            SendTimeoutError: The session did not go idle within timeout
                seconds. The turn keeps running on the server.
            SessionError: The turn ended with session.error.
        """
        self._ensure_alive()
        async with self._send_lock:
            self._ensure_alive()
            subscription = self._hub.subscribe(
                self.session_id, transform=_keep_for_wait, until=_is_terminal
            )
            try:
                return await asyncio.wait_for(
                    self._send_and_collect(subscription, prompt, attachments, mode),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                raise SendTimeoutError(self.session_id, timeout) from None
            finally:
                self._hub.unsubscribe(self.session_id, subscription)

    async def _send_and_collect(
        self,
        subscription: Subscription,
        prompt: str,
        attachments: list[Any] | None,
        mode: SendMode | None,
    ) -> SessionEvent | None:
        await self._send_message(prompt, attachments, mode)

        last_message: SessionEvent | None = None
        async for event in subscription:
            if event.type == EventType.ASSISTANT_MESSAGE.value:
                last_message = event
            elif event.type == EventType.SESSION_IDLE.value:
                return last_message
            elif event.type == EventType.SESSION_ERROR.value:
                raise SessionError(event)

        raise SessionDestroyedError(f"Session {self.session_id} was closed while waiting")

    async def send_stream(
        self,
        prompt: str,
        *,
        attachments: list[Any] | None = None,
        mode: SendMode | None = None,
        timeout: float | None = None,
        capacity: int | None = None,
    ) -> EventStream:
        """Send a message and return a stream of the turn's events.

        The stream yields every event from the moment of sending and closes
        right after session.idle or session.error. The session accepts no
        other send until then. With a timeout, a synthetic session.error
        ends the stream if the turn runs longer.
        """
        self._ensure_alive()
        await self._send_lock.acquire()
        try:
            self._ensure_alive()
            subscription = self._hub.subscribe(
                self.session_id, capacity=capacity, until=_is_terminal
            )
        except BaseException:
            self._send_lock.release()
            raise

        subscription.add_close_callback(lambda _: self._send_lock.release())
        try:
            message_id = await self._send_message(prompt, attachments, mode)
        except BaseException:
            self._hub.unsubscribe(self.session_id, subscription)
            raise

        return EventStream(self, subscription, message_id, timeout=timeout)

    async def abort(self) -> None:
        """Ask the server to abort the current turn. Harmless when idle."""
        self._ensure_alive()
        await self._client._request("session.abort", {"sessionId": self.session_id})

    # -- queries -------------------------------------------------------------

    async def get_messages(self) -> list[SessionEvent]:
        """Full event history as stored by the server."""
        self._ensure_alive()
        result = await self._client._request(
            "session.getMessages", {"sessionId": self.session_id}
        )
        return [
            SessionEvent.from_wire(self.session_id, event)
            for event in (result or {}).get("events", [])
        ]

    async def get_current_model(self) -> str | None:
        self._ensure_alive()
        result = await self._client._request(
            "session.model.getCurrent", {"sessionId": self.session_id}
        )
        return (result or {}).get("modelId")

    async def switch_model(self, model_id: str) -> str | None:
        """Switch the session to another model; returns the model now in use."""
        self._ensure_alive()
        result = await self._client._request(
            "session.model.switchTo", {"sessionId": self.session_id, "modelId": model_id}
        )
        return (result or {}).get("modelId")

    # -- teardown ------------------------------------------------------------

    async def destroy(self) -> None:
        """Release the session on the server and close its subscriptions.

        The session is unusable afterwards even if the server call fails;
        such failures are re-raised.
        """
        if self._destroyed:
            return
        _log.debug("Destroying session %s", self.session_id)
        try:
            await self._client._request(
                "session.destroy", {"sessionId": self.session_id}, timeout=DESTROY_TIMEOUT
            )
        finally:
            self._client._forget_session(self.session_id)

    async def __aenter__(self) -> CopilotSession:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.destroy()
