"""Exception types raised by the Copilot engine.

Every error derives from CopilotError. Configuration problems are raised
before any I/O happens; transport problems are broadcast to everything
waiting on the connection; remote and timeout errors stay local to the
caller that issued the request.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from copilot_engine.session.events import SessionEvent


class CopilotError(Exception):
    """Base class for all engine errors."""

    pass


class ConfigurationError(CopilotError, ValueError):
    """Invalid, unknown or mutually exclusive options.

    Attributes:
        unknown_keys: Option names that are not part of the option set.
        suggestions: Closest valid option name for each unknown key.
    """

    def __init__(
        self,
        message: str,
        *,
        unknown_keys: list[str] | None = None,
        suggestions: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.unknown_keys = unknown_keys or []
        self.suggestions = suggestions or {}


class FramingError(CopilotError):
    """Malformed Content-Length frame on the wire.

    Raised when:
    - Content-Length header is missing
    - Content-Length value is not a valid integer
    - Content-Length value is negative or over the size limit
    - Header format is malformed
    - The stream ends in the middle of a frame
    - The body is not UTF-8 JSON or not a JSON object
    """

    pass


class TransportError(CopilotError, ConnectionError):
    """The connection to the CLI server failed or was closed."""

    pass


class ProtocolVersionError(CopilotError):
    """The server speaks a protocol version this client does not support."""

    def __init__(self, expected: int, actual: Any) -> None:
        if actual is None:
            message = (
                f"SDK protocol version mismatch: SDK expects version {expected}, "
                "but server does not report a protocol version"
            )
        else:
            message = (
                f"SDK protocol version mismatch: SDK expects version {expected}, "
                f"but server reports version {actual}"
            )
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class RemoteError(CopilotError):
    """Error response returned by the remote side of the connection."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"{message} (code {code})")
        self.code = code
        self.message = message
        self.data = data

    def to_dict(self) -> dict[str, Any]:
        """JSON-RPC error object."""
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


class RequestTimeoutError(CopilotError, TimeoutError):
    """No response arrived for a request before its deadline."""

    def __init__(self, method: str, timeout: float) -> None:
        super().__init__(f"Request {method!r} timed out after {timeout}s")
        self.method = method
        self.timeout = timeout


class SendTimeoutError(CopilotError, TimeoutError):
    """send_and_wait gave up before the session became idle.

    The remote turn keeps running; only the local wait was abandoned.
    """

    def __init__(self, session_id: str, timeout: float) -> None:
        super().__init__(f"Timed out after {timeout}s waiting for session {session_id} to go idle")
        self.session_id = session_id
        self.timeout = timeout


class SessionError(CopilotError):
    """A session.error event ended the operation."""

    def __init__(self, event: SessionEvent) -> None:
        message = event.data.get("message") if isinstance(event.data, dict) else None
        super().__init__(message or "Session error")
        self.event = event


class SessionDestroyedError(CopilotError):
    """The session was destroyed and can no longer be used."""

    pass
