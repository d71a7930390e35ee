"""CopilotClient: one connection to the CLI server, any number of sessions.

Usage:
    async with CopilotClient(cli_path="copilot") as client:
        session = await client.create_session(model="gpt-5")
        reply = await session.send_and_wait("Hello")

The client owns the transport, the JSON-RPC connection, the session map
and the event hub. When the connection drops unexpectedly, every pending
request fails, every live session receives a synthetic session.error and
is dropped, and (with auto_restart) a fresh connection is started.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from copilot_engine.config.schema import (
    ClientOptions,
    ResumeSessionConfig,
    SessionConfig,
    SessionListFilter,
)
from copilot_engine.config.validation import build_model
from copilot_engine.errors import (
    CopilotError,
    ProtocolVersionError,
    RemoteError,
    RequestTimeoutError,
    TransportError,
)
from copilot_engine.logging import get_logger
from copilot_engine.protocol.jsonrpc import JsonRpcConnection, JsonRpcMessage
from copilot_engine.session.bridge import InboundRequestBridge
from copilot_engine.session.events import EventType, SessionEvent, synthetic_error
from copilot_engine.session.hub import EventHub
from copilot_engine.session.session import CopilotSession
from copilot_engine.transport import ConnectionState, ServerTransport
from copilot_engine.types import (
    AuthStatus,
    ModelInfo,
    PingResponse,
    QuotaSnapshot,
    SessionLifecycleEvent,
    SessionMetadata,
    StatusResponse,
    ToolInfo,
)

_log = get_logger("client")

PROTOCOL_VERSION = 2
EXIT_GRACE_PERIOD = 1.0

LifecycleHandler = Callable[[SessionLifecycleEvent], None]


class CopilotClient:
    """Client for a Copilot CLI server.

    Options are given as keyword arguments (see ClientOptions) or as a
    ready-made ClientOptions; unknown keywords raise ConfigurationError.
    """

    def __init__(self, options: ClientOptions | None = None, **kwargs: Any) -> None:
        if options is None:
            options = build_model(ClientOptions, kwargs)
        elif kwargs:
            merged = {**_explicit_fields(options), **kwargs}
            options = build_model(ClientOptions, merged)
        self.options: ClientOptions = options

        self.hub = EventHub(options.event_buffer_size)
        self._sessions: dict[str, CopilotSession] = {}
        self._bridge = InboundRequestBridge(self._sessions.get, tool_timeout=options.tool_timeout)
        self._state = ConnectionState.DISCONNECTED
        self._transport: ServerTransport | None = None
        self._connection: JsonRpcConnection | None = None
        self._notifications: asyncio.Queue[JsonRpcMessage] | None = None
        self._start_lock = asyncio.Lock()
        self._lifecycle_handlers: list[tuple[LifecycleHandler, str | None]] = []
        self._models_cache: list[ModelInfo] | None = None
        self._models_fetch: asyncio.Future[list[ModelInfo]] | None = None
        self._restart_task: asyncio.Task[None] | None = None
        self._stopping = False

    def __repr__(self) -> str:
        return f"CopilotClient(state={self._state.value}, sessions={len(self._sessions)})"

    async def __aenter__(self) -> CopilotClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        errors = await self.stop()
        for error in errors:
            _log.warning("Error during shutdown: %s", error)

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def sessions(self) -> dict[str, CopilotSession]:
        """Live sessions by id."""
        return dict(self._sessions)

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            _log.debug("Connection state %s -> %s", self._state.value, state.value)
            self._state = state

    async def start(self) -> None:
        """Spawn or attach to the server and verify its protocol version.

        Raises:
            TransportError: The server could not be reached or died on startup.
            ProtocolVersionError: The server speaks another protocol version.
        """
        async with self._start_lock:
            if self._state is ConnectionState.CONNECTED:
                return
            await self._close_connection()

            _log.info("Starting Copilot client")
            self._set_state(ConnectionState.CONNECTING)
            transport = ServerTransport(self.options)
            self._transport = transport
            try:
                reader, writer = await transport.open()
                self._attach(reader, writer)
                await self._verify_protocol_version()
            except BaseException:
                self._set_state(ConnectionState.ERROR)
                self._abort_connection()
                raise
            self._set_state(ConnectionState.CONNECTED)
            _log.info("Copilot client connected")

    async def connect_with_streams(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Speak to a server over an existing stream pair instead of spawning one."""
        async with self._start_lock:
            if self._state is ConnectionState.CONNECTED:
                return
            self._set_state(ConnectionState.CONNECTING)
            self._transport = None
            try:
                self._attach(reader, writer)
                await self._verify_protocol_version()
            except BaseException:
                self._set_state(ConnectionState.ERROR)
                self._abort_connection()
                raise
            self._set_state(ConnectionState.CONNECTED)

    def _attach(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self._notifications is None:
            self._notifications = asyncio.Queue(maxsize=self.options.notification_queue_size)
        connection = JsonRpcConnection(
            reader,
            writer,
            notification_queue=self._notifications,
            on_close=self._on_connection_lost,
        )
        connection.register_notification_handler("session.event", self._on_session_event)
        connection.register_notification_handler("session.lifecycle", self._on_lifecycle_event)
        self._bridge.install(connection)
        connection.start()
        self._connection = connection

    def _describe(self, message: str) -> str:
        if self._transport is not None:
            return self._transport.describe_failure(message)
        return message

    async def _verify_protocol_version(self) -> None:
        assert self._connection is not None
        try:
            result = await self._connection.call(
                "ping", {}, timeout=self.options.startup_timeout
            )
        except RequestTimeoutError:
            raise TransportError(self._describe("Ping request timed out")) from None
        except TransportError as e:
            if self._transport is not None:
                await self._transport.wait_exited(EXIT_GRACE_PERIOD)
            raise TransportError(self._describe(str(e))) from e

        version = (result or {}).get("protocolVersion")
        if version != PROTOCOL_VERSION:
            raise ProtocolVersionError(PROTOCOL_VERSION, version)

    async def stop(self) -> list[Exception]:
        """Destroy every session, close the connection and stop the server.

        Returns:
            Errors met during cleanup; stop() itself does not raise them.
        """
        _log.info("Stopping Copilot client")
        self._stopping = True
        errors: list[Exception] = []
        try:
            await self._cancel_restart()

            for session in list(self._sessions.values()):
                try:
                    await session.destroy()
                except Exception as e:
                    errors.append(
                        CopilotError(f"Failed to destroy session {session.session_id}: {e}")
                    )
            self._sessions.clear()
            self.hub.close_all()

            errors.extend(await self._close_connection())
            self._reset_caches()
            self._set_state(ConnectionState.DISCONNECTED)
        finally:
            self._stopping = False
        _log.info("Copilot client stopped")
        return errors

    def force_stop(self) -> None:
        """Tear everything down now: no session.destroy calls, no waiting.

        Running tool and permission handler tasks are cancelled. Handlers
        that run in worker threads cannot be interrupted; their results are
        discarded.
        """
        self._stopping = True
        try:
            if self._restart_task is not None:
                self._restart_task.cancel()
                self._restart_task = None
            for session in list(self._sessions.values()):
                session._mark_destroyed()
            self._sessions.clear()
            self.hub.close_all()
            self._abort_connection()
            self._reset_caches()
            self._set_state(ConnectionState.DISCONNECTED)
        finally:
            self._stopping = False

    async def _close_connection(self) -> list[Exception]:
        errors: list[Exception] = []
        connection, self._connection = self._connection, None
        transport, self._transport = self._transport, None
        if connection is not None:
            try:
                await connection.close()
            except (OSError, TransportError) as e:
                errors.append(e)
        if transport is not None:
            errors.extend(await transport.close())
        return errors

    def _abort_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None:
            connection.abort()
        if self._transport is not None:
            self._transport.kill()

    def _reset_caches(self) -> None:
        self._models_cache = None
        if self._models_fetch is not None and not self._models_fetch.done():
            self._models_fetch.cancel()
        self._models_fetch = None

    async def _cancel_restart(self) -> None:
        task, self._restart_task = self._restart_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _on_connection_lost(self, error: TransportError) -> None:
        if self._stopping:
            return
        message = self._describe(str(error))
        _log.warning("Connection to CLI server lost: %s", message)

        for session in list(self._sessions.values()):
            event = synthetic_error(session.session_id, message)
            session._record(event)
            self.hub.publish(event)
            session._mark_destroyed()
        self._sessions.clear()
        self._reset_caches()

        was_connected = self._state is ConnectionState.CONNECTED
        self._set_state(ConnectionState.ERROR)

        if self.options.auto_restart and was_connected and self._transport is not None:
            self._restart_task = asyncio.create_task(self._restart(), name="copilot-restart")

    async def _restart(self) -> None:
        _log.warning("Auto-restart triggered")
        try:
            await self._close_connection()
            await self.start()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            _log.error("Auto-restart failed: %s", e)

    async def _ensure_connected(self) -> JsonRpcConnection:
        if self._restart_task is not None and not self._restart_task.done():
            await asyncio.shield(self._restart_task)

        connection = self._connection
        if (
            self._state is ConnectionState.CONNECTED
            and connection is not None
            and not connection.closed
        ):
            return connection

        if not self.options.auto_start:
            raise TransportError("Client not connected. Call start() first.")
        await self.start()
        assert self._connection is not None
        return self._connection

    async def _request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        connection = await self._ensure_connected()
        if timeout is None:
            timeout = self.options.request_timeout
        return await connection.call(method, params, timeout=timeout)

    # =========================================================================
    # Notifications
    # =========================================================================

    def _on_session_event(self, params: dict[str, Any]) -> None:
        session_id = params.get("sessionId", "")
        raw_event = params.get("event")
        if not isinstance(raw_event, dict):
            _log.warning("Malformed session.event for %s: %r", session_id, raw_event)
            return

        session = self._sessions.get(session_id)
        if session is None or session.destroyed:
            _log.debug("Dropping %s for unknown session %s", raw_event.get("type"), session_id)
            return

        event = SessionEvent.from_wire(session_id, raw_event)
        if event.type == EventType.SESSION_START.value:
            requested = session.config.model
            selected = event.data.get("selectedModel")
            if requested and selected and requested != selected:
                _log.warning(
                    "Model mismatch for session %s: requested %s, server selected %s",
                    session_id,
                    requested,
                    selected,
                )

        session._record(event)
        self.hub.publish(event)

    def _on_lifecycle_event(self, params: dict[str, Any]) -> None:
        try:
            event = SessionLifecycleEvent.model_validate(params)
        except ValueError as e:
            _log.warning("Malformed session.lifecycle notification: %s", e)
            return

        _log.debug("Lifecycle event %s for session %s", event.type, event.session_id)
        for handler, event_type in list(self._lifecycle_handlers):
            if event_type is not None and event_type != event.type:
                continue
            try:
                handler(event)
            except Exception:
                _log.exception("Lifecycle handler error")

    def on_lifecycle_event(
        self, handler: LifecycleHandler, event_type: str | None = None
    ) -> Callable[[], None]:
        """Call handler for session lifecycle notifications.

        Args:
            handler: Called with each SessionLifecycleEvent on the reader task.
            event_type: Only deliver this type (e.g. "session.created").

        Returns:
            Unsubscribe function - call it to remove the handler
        """
        entry = (handler, event_type)
        self._lifecycle_handlers.append(entry)

        def unsubscribe() -> None:
            if entry in self._lifecycle_handlers:
                self._lifecycle_handlers.remove(entry)

        return unsubscribe

    def notifications(self) -> asyncio.Queue[JsonRpcMessage]:
        """Notifications that are not session events or lifecycle events.

        The queue is bounded; notifications arriving while it is full are
        dropped.
        """
        if self._notifications is None:
            self._notifications = asyncio.Queue(maxsize=self.options.notification_queue_size)
        return self._notifications

    # =========================================================================
    # Server queries
    # =========================================================================

    async def ping(self, message: str | None = None) -> PingResponse:
        result = await self._request("ping", {"message": message} if message else {})
        return PingResponse.model_validate(result or {})

    async def get_status(self) -> StatusResponse:
        """CLI version and protocol version."""
        return StatusResponse.model_validate(await self._request("status.get") or {})

    async def get_auth_status(self) -> AuthStatus:
        return AuthStatus.model_validate(await self._request("auth.getStatus") or {})

    async def list_models(self) -> list[ModelInfo]:
        """Available models, cached for the lifetime of the connection.

        Concurrent callers share one models.list request.
        """
        if self._models_cache is not None:
            return list(self._models_cache)

        if self._models_fetch is None:
            self._models_fetch = asyncio.ensure_future(self._fetch_models())
        fetch = self._models_fetch
        try:
            models = await asyncio.shield(fetch)
        finally:
            if self._models_fetch is fetch and fetch.done():
                self._models_fetch = None
        self._models_cache = models
        return list(models)

    async def _fetch_models(self) -> list[ModelInfo]:
        result = await self._request("models.list")
        return [ModelInfo.model_validate(model) for model in (result or {}).get("models", [])]

    async def list_tools(self, model: str | None = None) -> list[ToolInfo]:
        """Built-in tools, with model-specific overrides when model is given."""
        result = await self._request("tools.list", {"model": model} if model else {})
        return [ToolInfo.model_validate(tool) for tool in (result or {}).get("tools", [])]

    async def get_quota(self) -> dict[str, QuotaSnapshot]:
        """Quota snapshots keyed by quota type."""
        result = await self._request("account.getQuota")
        snapshots = (result or {}).get("quotaSnapshots") or {}
        return {name: QuotaSnapshot.model_validate(value) for name, value in snapshots.items()}

    # =========================================================================
    # Sessions
    # =========================================================================

    async def create_session(
        self, config: SessionConfig | None = None, **kwargs: Any
    ) -> CopilotSession:
        """Create a new session.

        Options are given as keyword arguments (see SessionConfig) or as a
        SessionConfig.

        Raises:
            ConfigurationError: Invalid options; nothing is sent.
            RemoteError: The server refused to create the session.
        """
        config = _session_config(SessionConfig, config, kwargs)
        result = await self._request("session.create", config.to_wire())
        return self._register_session(result, config)

    async def resume_session(
        self, session_id: str, config: ResumeSessionConfig | None = None, **kwargs: Any
    ) -> CopilotSession:
        """Reattach to an existing session by id.

        Raises:
            ConfigurationError: Invalid options; nothing is sent.
            RemoteError: The server does not know the session (passed through
                unchanged) or refused to resume it.
        """
        config = _session_config(ResumeSessionConfig, config, kwargs)
        params = config.to_wire()
        params["sessionId"] = session_id
        result = await self._request("session.resume", params)
        return self._register_session(result, config, fallback_id=session_id)

    def _register_session(
        self, result: Any, config: SessionConfig, *, fallback_id: str | None = None
    ) -> CopilotSession:
        result = result or {}
        session_id = result.get("sessionId") or fallback_id or config.session_id
        if not session_id:
            raise RemoteError(-32603, "Server did not return a session id", result)
        session = CopilotSession(
            self, session_id, config, workspace_path=result.get("workspacePath")
        )
        previous = self._sessions.get(session_id)
        if previous is not None:
            previous._mark_destroyed()
        self._sessions[session_id] = session
        _log.debug("Session %s ready", session_id)
        return session

    def _forget_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session._mark_destroyed()

    def get_session(self, session_id: str) -> CopilotSession | None:
        """Live session by id, if this client created or resumed it."""
        return self._sessions.get(session_id)

    async def list_sessions(
        self, filter: SessionListFilter | dict[str, Any] | None = None
    ) -> list[SessionMetadata]:
        """Metadata of the sessions stored by the server.

        Args:
            filter: Narrow by cwd, git_root, repository or branch.
        """
        params: dict[str, Any] = {}
        if filter is not None:
            if not isinstance(filter, SessionListFilter):
                filter = build_model(SessionListFilter, filter, what="filter key")
            params["filter"] = filter.to_wire()
        result = await self._request("session.list", params)
        return [
            SessionMetadata.model_validate(item) for item in (result or {}).get("sessions", [])
        ]

    async def delete_session(self, session_id: str) -> None:
        """Delete a session and its stored data.

        Raises:
            RemoteError: The server reported that the delete failed.
        """
        result = await self._request("session.delete", {"sessionId": session_id}) or {}
        if not result.get("success", False):
            raise RemoteError(
                -32603, f"Failed to delete session: {result.get('error')}", result.get("error")
            )
        self._forget_session(session_id)

    async def get_last_session_id(self) -> str | None:
        """Id of the most recently updated session, if any."""
        result = await self._request("session.getLastId")
        return (result or {}).get("sessionId")

    async def get_foreground_session_id(self) -> str | None:
        """Session shown in the server's TUI, when it runs one."""
        result = await self._request("session.getForeground")
        return (result or {}).get("sessionId")

    async def set_foreground_session_id(self, session_id: str) -> None:
        result = await self._request("session.setForeground", {"sessionId": session_id}) or {}
        if not result.get("success", False):
            raise RemoteError(
                -32603,
                f"Failed to set foreground session: {result.get('error')}",
                result.get("error"),
            )


def _session_config(model: type[SessionConfig], config: Any, kwargs: dict[str, Any]) -> Any:
    if config is None:
        return build_model(model, kwargs, what="session option")
    if kwargs:
        merged = {**_explicit_fields(config), **kwargs}
        return build_model(model, merged, what="session option")
    return config


def _explicit_fields(model: Any) -> dict[str, Any]:
    return {name: getattr(model, name) for name in model.model_fields_set}
