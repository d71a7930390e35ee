"""Copilot engine: asyncio client for the Copilot CLI server."""

__version__ = "0.1.0"

# Public API
from copilot_engine.client import PROTOCOL_VERSION, CopilotClient
from copilot_engine.config import (
    ClientOptions,
    ResumeSessionConfig,
    SessionConfig,
    SessionHooks,
    load_client_options,
)
from copilot_engine.errors import (
    ConfigurationError,
    CopilotError,
    FramingError,
    ProtocolVersionError,
    RemoteError,
    RequestTimeoutError,
    SendTimeoutError,
    SessionDestroyedError,
    SessionError,
    TransportError,
)
from copilot_engine.helpers import query, query_stream
from copilot_engine.session import (
    EventType,
    SessionEvent,
    ToolInvocation,
    ToolResult,
    approve_all,
    define_tool,
)
from copilot_engine.session.session import CopilotSession, EventStream
from copilot_engine.transport import ConnectionState
from copilot_engine.types import ModelInfo, SessionMetadata

__all__ = [
    # Main entry points
    "CopilotClient",
    "CopilotSession",
    "EventStream",
    "ConnectionState",
    "PROTOCOL_VERSION",
    # One-shot helpers
    "query",
    "query_stream",
    # Config
    "ClientOptions",
    "ResumeSessionConfig",
    "SessionConfig",
    "SessionHooks",
    "load_client_options",
    # Events and tools
    "EventType",
    "SessionEvent",
    "ToolInvocation",
    "ToolResult",
    "approve_all",
    "define_tool",
    # Server types
    "ModelInfo",
    "SessionMetadata",
    # Errors
    "ConfigurationError",
    "CopilotError",
    "FramingError",
    "ProtocolVersionError",
    "RemoteError",
    "RequestTimeoutError",
    "SendTimeoutError",
    "SessionDestroyedError",
    "SessionError",
    "TransportError",
]
