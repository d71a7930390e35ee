"""Bidirectional JSON-RPC 2.0 connection.

One reader task per connection pulls frames off the stream and routes them:

- responses resolve the pending request with the same id
- inbound requests run their registered handler in a separate task and the
  handler's return value is written back as the response
- notifications go to a registered notification handler, or onto a bounded
  queue that drops new notifications when it is full

Writes from any task are serialized by a lock so frames never interleave.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from copilot_engine.errors import (
    FramingError,
    RemoteError,
    RequestTimeoutError,
    TransportError,
)
from copilot_engine.logging import TRACE, get_logger
from copilot_engine.protocol.framing import DEFAULT_MAX_MESSAGE_SIZE, read_message, write_message

_log = get_logger("jsonrpc")

JSONRPC_VERSION = "2.0"

# Standard and server-specific error codes
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
CONNECTION_CLOSED = -32000
UNKNOWN_SESSION = -32001

RequestHandler = Callable[[dict[str, Any]], Awaitable[Any]]
NotificationHandler = Callable[[dict[str, Any]], None]


@dataclass
class JsonRpcMessage:
    """Parsed JSON-RPC message."""

    jsonrpc: str = JSONRPC_VERSION
    id: int | str | None = None
    method: str | None = None
    params: dict[str, Any] | None = None
    result: Any = None
    error: dict[str, Any] | None = None

    def is_request(self) -> bool:
        """Check if this is a request (has method and id)."""
        return self.method is not None and self.id is not None

    def is_notification(self) -> bool:
        """Check if this is a notification (has method but no id)."""
        return self.method is not None and self.id is None

    def is_response(self) -> bool:
        """Check if this is a response (has id but no method)."""
        return self.method is None and self.id is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        d: dict[str, Any] = {"jsonrpc": self.jsonrpc}
        if self.id is not None:
            d["id"] = self.id
        if self.method is not None:
            d["method"] = self.method
            if self.params is not None:
                d["params"] = self.params
        elif self.error is not None:
            d["error"] = self.error
        else:
            d["result"] = self.result
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JsonRpcMessage:
        """Parse from dictionary."""
        params = data.get("params")
        return cls(
            jsonrpc=data.get("jsonrpc", JSONRPC_VERSION),
            id=data.get("id"),
            method=data.get("method"),
            params=params if isinstance(params, dict) else None,
            result=data.get("result"),
            error=data.get("error"),
        )


def _valid_id(value: Any) -> bool:
    """Ids are strings or integers; None marks a notification."""
    if value is None or isinstance(value, str):
        return True
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass
class PendingRequest:
    """An outgoing request waiting for its response."""

    id: int
    method: str
    future: asyncio.Future[Any]
    issued_at: float = field(default_factory=time.monotonic)


class JsonRpcConnection:
    """JSON-RPC peer over an asyncio stream pair.

    Args:
        reader: Stream the peer writes to.
        writer: Stream the peer reads from.
        notification_queue_size: Capacity of the unrouted notification queue.
        notification_queue: Use this queue instead of creating one, so
            unrouted notifications survive reconnects.
        on_close: Called with the reason when the connection is lost without
            close() or abort() having been called.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        notification_queue_size: int = 4096,
        notification_queue: asyncio.Queue[JsonRpcMessage] | None = None,
        max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
        on_close: Callable[[TransportError], None] | None = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._max_message_size = max_message_size
        self._on_close = on_close
        self._ids = itertools.count(1)
        self._pending: dict[int, PendingRequest] = {}
        self._request_handlers: dict[str, RequestHandler] = {}
        self._notification_handlers: dict[str, NotificationHandler] = {}
        if notification_queue is None:
            notification_queue = asyncio.Queue(maxsize=notification_queue_size)
        self._notifications = notification_queue
        self._write_lock = asyncio.Lock()
        self._handler_tasks: set[asyncio.Task[None]] = set()
        self._reader_task: asyncio.Task[None] | None = None
        self._closed = False
        self._closed_event = asyncio.Event()
        self.dropped_notifications = 0

    # -- registration -------------------------------------------------------

    def register_request_handler(self, method: str, handler: RequestHandler) -> None:
        """Route inbound requests for method to an async handler."""
        self._request_handlers[method] = handler

    def register_notification_handler(self, method: str, handler: NotificationHandler) -> None:
        """Route notifications for method to a handler.

        Notification handlers run on the reader task and must not block.
        """
        self._notification_handlers[method] = handler

    # -- lifecycle ----------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def notifications(self) -> asyncio.Queue[JsonRpcMessage]:
        """Notifications with no registered handler, oldest first."""
        return self._notifications

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        """Start the reader task."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop(), name="jsonrpc-reader")

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    async def close(self) -> None:
        """Close the connection, failing every pending request."""
        self._shutdown("Connection closed", unexpected=False)
        if self._reader_task is not None and self._reader_task is not asyncio.current_task():
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError) as e:
            _log.debug("Error while closing writer: %s", e)

    def abort(self) -> None:
        """Tear the connection down immediately without waiting."""
        self._shutdown("Connection aborted", unexpected=False)
        self._writer.close()

    def _shutdown(self, reason: str, *, unexpected: bool) -> None:
        if self._closed:
            return
        self._closed = True

        for pending in list(self._pending.values()):
            if not pending.future.done():
                pending.future.set_exception(TransportError(f"{reason} ({pending.method})"))
        self._pending.clear()

        for task in list(self._handler_tasks):
            task.cancel()

        if self._reader_task is not None and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()

        self._closed_event.set()

        if unexpected:
            _log.warning("%s", reason)
            if self._on_close is not None:
                self._on_close(TransportError(reason))

    # -- outbound -----------------------------------------------------------

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and wait for its result.

        Raises:
            RemoteError: The peer answered with an error.
            TransportError: The connection closed before the response arrived.
            RequestTimeoutError: No response within timeout seconds.
        """
        if self._closed:
            raise TransportError(f"Connection is closed ({method})")

        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingRequest(id=request_id, method=method, future=future)

        try:
            await self._send(
                JsonRpcMessage(id=request_id, method=method, params=params or {}).to_dict()
            )
            if timeout is None:
                return await future
            try:
                return await asyncio.wait_for(future, timeout=timeout)
            except asyncio.TimeoutError:
                raise RequestTimeoutError(method, timeout) from None
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification; no response is expected."""
        await self._send(JsonRpcMessage(method=method, params=params or {}).to_dict())

    async def _send(self, message: dict[str, Any]) -> None:
        async with self._write_lock:
            if self._closed:
                raise TransportError("Connection is closed")
            _log.log(TRACE, "--> %s", message)
            try:
                await write_message(self._writer, message)
            except (ConnectionError, OSError) as e:
                raise TransportError(f"Failed to write to connection: {e}") from e

    # -- inbound ------------------------------------------------------------

    async def _read_loop(self) -> None:
        reason = "Connection closed by peer"
        try:
            while True:
                data = await read_message(self._reader, max_message_size=self._max_message_size)
                if data is None:
                    break
                _log.log(TRACE, "<-- %s", data)
                self._dispatch(JsonRpcMessage.from_dict(data))
        except FramingError as e:
            reason = f"Framing error: {e}"
        except (ConnectionError, OSError) as e:
            reason = f"Connection lost: {e}"
        except Exception as e:
            _log.exception("Reader failed")
            reason = f"Reader failed: {e}"
        self._shutdown(reason, unexpected=not self._closed)

    def _dispatch(self, msg: JsonRpcMessage) -> None:
        if not _valid_id(msg.id) or not (msg.method is None or isinstance(msg.method, str)):
            _log.warning("Ignoring message with invalid id or method: %s", msg.to_dict())
            return
        if msg.is_response():
            self._resolve(msg)
        elif msg.is_request():
            task = asyncio.create_task(self._handle_request(msg), name=f"jsonrpc-{msg.method}")
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)
        elif msg.is_notification():
            self._handle_notification(msg)
        else:
            _log.warning("Ignoring message with neither id nor method: %s", msg.to_dict())

    def _resolve(self, msg: JsonRpcMessage) -> None:
        pending = self._pending.pop(msg.id, None)  # type: ignore[arg-type]
        if pending is None:
            _log.debug("Response for unknown request id %r", msg.id)
            return
        if pending.future.done():
            return

        if msg.error is not None:
            error = msg.error if isinstance(msg.error, dict) else {"message": str(msg.error)}
            pending.future.set_exception(
                RemoteError(
                    code=error.get("code", INTERNAL_ERROR),
                    message=error.get("message", "Unknown error"),
                    data=error.get("data"),
                )
            )
        else:
            pending.future.set_result(msg.result)

    def _handle_notification(self, msg: JsonRpcMessage) -> None:
        assert msg.method is not None
        handler = self._notification_handlers.get(msg.method)
        if handler is not None:
            try:
                handler(msg.params or {})
            except Exception:
                _log.exception("Notification handler for %s failed", msg.method)
            return

        try:
            self._notifications.put_nowait(msg)
        except asyncio.QueueFull:
            self.dropped_notifications += 1
            _log.debug("Notification queue full, dropping %s", msg.method)

    async def _handle_request(self, msg: JsonRpcMessage) -> None:
        assert msg.method is not None
        handler = self._request_handlers.get(msg.method)

        if handler is None:
            response = JsonRpcMessage(
                id=msg.id,
                error={"code": METHOD_NOT_FOUND, "message": f"Method not found: {msg.method}"},
            )
        else:
            try:
                result = await handler(msg.params or {})
                response = JsonRpcMessage(id=msg.id, result=result)
            except RemoteError as e:
                response = JsonRpcMessage(id=msg.id, error=e.to_dict())
            except Exception as e:
                _log.exception("Handler for %s failed", msg.method)
                response = JsonRpcMessage(
                    id=msg.id,
                    error={"code": INTERNAL_ERROR, "message": "Internal error", "data": str(e)},
                )

        try:
            await self._send(response.to_dict())
        except TransportError as e:
            _log.debug("Could not answer %s: %s", msg.method, e)
