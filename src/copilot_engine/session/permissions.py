"""Permission results for the server's permission.request callbacks.

A permission handler is called as ``handler(request, context)`` where
``request`` is the raw request dict from the server (``kind``,
``toolCallId`` and kind-specific fields) and ``context`` is
``{"session_id": ...}``. It returns one of the result dicts below, and the
dict is relayed to the server unchanged.
"""

from __future__ import annotations

from typing import Any

APPROVED = "approved"
DENIED_BY_RULES = "denied-by-rules"
DENIED_NO_APPROVAL_RULE = "denied-no-approval-rule-and-could-not-request-from-user"
DENIED_INTERACTIVELY = "denied-interactively-by-user"

PERMISSION_KINDS = frozenset(
    {APPROVED, DENIED_BY_RULES, DENIED_NO_APPROVAL_RULE, DENIED_INTERACTIVELY}
)


def approved() -> dict[str, Any]:
    return {"kind": APPROVED}


def denied_by_rules(rules: list[dict[str, Any]]) -> dict[str, Any]:
    """Denied by configured rules, e.g. ``[{"kind": "shell", "argument": "rm"}]``."""
    return {"kind": DENIED_BY_RULES, "rules": rules}


def denied_no_approval_rule() -> dict[str, Any]:
    return {"kind": DENIED_NO_APPROVAL_RULE}


def denied_interactively(feedback: str | None = None) -> dict[str, Any]:
    result: dict[str, Any] = {"kind": DENIED_INTERACTIVELY}
    if feedback is not None:
        result["feedback"] = feedback
    return result


def approve_all(request: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
    """Permission handler that approves every request."""
    return approved()


def coerce_permission_result(value: Any) -> dict[str, Any] | None:
    """Return the result dict to relay, or None if value is not a valid result.

    Accepts a result dict (``{"kind": ...}``) or one wrapped as
    ``{"result": {"kind": ...}}``.
    """
    if isinstance(value, dict):
        if isinstance(value.get("kind"), str):
            return value
        inner = value.get("result")
        if isinstance(inner, dict) and isinstance(inner.get("kind"), str):
            return inner
    return None
