"""Session events, event fan-out, tools and permission results.

CopilotSession itself lives in copilot_engine.session.session and is
exported from the top-level package.
"""

from copilot_engine.session.events import EventType, SessionEvent
from copilot_engine.session.hub import EventHub, Subscription
from copilot_engine.session.permissions import (
    approve_all,
    approved,
    denied_by_rules,
    denied_interactively,
    denied_no_approval_rule,
)
from copilot_engine.session.tools import (
    ToolDefinition,
    ToolInvocation,
    ToolResult,
    define_tool,
)

__all__ = [
    # Events
    "EventHub",
    "EventType",
    "SessionEvent",
    "Subscription",
    # Permissions
    "approve_all",
    "approved",
    "denied_by_rules",
    "denied_interactively",
    "denied_no_approval_rule",
    # Tools
    "ToolDefinition",
    "ToolInvocation",
    "ToolResult",
    "define_tool",
]
