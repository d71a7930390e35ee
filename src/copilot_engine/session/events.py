"""Session events as delivered by the server's session.event notifications."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# -----------------------------------------------------------------------------
# Event types
# -----------------------------------------------------------------------------


class EventType(str, Enum):
    """Known event types. Unknown types are passed through as plain strings."""

    SESSION_START = "session.start"
    SESSION_RESUME = "session.resume"
    SESSION_IDLE = "session.idle"
    SESSION_ERROR = "session.error"
    SESSION_INFO = "session.info"
    SESSION_MODEL_CHANGE = "session.model_change"
    SESSION_TRUNCATION = "session.truncation"
    SESSION_COMPACTION_START = "session.compaction_start"
    SESSION_COMPACTION_COMPLETE = "session.compaction_complete"
    USER_MESSAGE = "user.message"
    ASSISTANT_TURN_START = "assistant.turn_start"
    ASSISTANT_INTENT = "assistant.intent"
    ASSISTANT_REASONING = "assistant.reasoning"
    ASSISTANT_REASONING_DELTA = "assistant.reasoning_delta"
    ASSISTANT_MESSAGE = "assistant.message"
    ASSISTANT_MESSAGE_DELTA = "assistant.message_delta"
    ASSISTANT_TURN_END = "assistant.turn_end"
    ASSISTANT_USAGE = "assistant.usage"
    ABORT = "abort"
    TOOL_EXECUTION_START = "tool.execution_start"
    TOOL_EXECUTION_PROGRESS = "tool.execution_progress"
    TOOL_EXECUTION_COMPLETE = "tool.execution_complete"
    SUBAGENT_STARTED = "subagent.started"
    SUBAGENT_COMPLETED = "subagent.completed"
    SUBAGENT_FAILED = "subagent.failed"


# Events that end a send_and_wait / send_stream turn
TERMINAL_EVENT_TYPES = frozenset({EventType.SESSION_IDLE.value, EventType.SESSION_ERROR.value})


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True, slots=True)
class SessionEvent:
    """One event in a session's stream.

    Attributes:
        type: Dotted event type, e.g. "assistant.message".
        data: Event payload exactly as sent by the server.
        session_id: Session the event belongs to.
        id: Server-assigned event id.
        timestamp: ISO-8601 timestamp string.
        parent_id: Id of the event this one follows from, if any.
        ephemeral: True for events that are not persisted (e.g. deltas).
    """

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    session_id: str = ""
    id: str = ""
    timestamp: str = ""
    parent_id: str | None = None
    ephemeral: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    @classmethod
    def from_wire(cls, session_id: str, event: dict[str, Any]) -> SessionEvent:
        data = event.get("data")
        event_type = event.get("type") or ""
        return cls(
            type=event_type.value if isinstance(event_type, EventType) else str(event_type),
            data=data if isinstance(data, dict) else {},
            session_id=session_id,
            id=str(event.get("id") or ""),
            timestamp=str(event.get("timestamp") or ""),
            parent_id=event.get("parentId"),
            ephemeral=bool(event.get("ephemeral", False)),
        )

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "parentId": self.parent_id,
            "type": self.type,
            "data": self.data,
        }
        if self.ephemeral:
            wire["ephemeral"] = True
        return wire


def synthetic_error(session_id: str, message: str, error_type: str = "connection") -> SessionEvent:
    """A locally generated session.error, e.g. after connection loss."""
    return SessionEvent(
        type=EventType.SESSION_ERROR.value,
        data={"errorType": error_type, "message": message},
        session_id=session_id,
        id=str(uuid.uuid4()),
        timestamp=_now(),
        ephemeral=True,
    )
