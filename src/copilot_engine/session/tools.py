"""Client-side tools the server can call back into.

A tool is a name, a description, a JSON schema for its arguments and a
handler. The handler is called as ``handler(arguments, invocation)`` and
may be a plain function or a coroutine function. Whatever it returns is
normalized into a ToolResult envelope before it goes back on the wire.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel

ResultType = Literal["success", "failure", "denied", "rejected"]

ToolHandler = Callable[[Any, "ToolInvocation"], Any]

HANDLER_ERROR_TEXT = "Invoking this tool produced an error. Detailed information is not available."


@dataclass(frozen=True, slots=True)
class ToolInvocation:
    """One inbound tool call."""

    session_id: str
    tool_call_id: str
    tool_name: str
    arguments: Any


@dataclass(frozen=True, slots=True)
class ToolResult:
    """Envelope returned to the server for a tool call."""

    text_result_for_llm: str
    result_type: ResultType = "success"
    error: str | None = None
    tool_telemetry: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {
            "textResultForLlm": self.text_result_for_llm,
            "resultType": self.result_type,
            "toolTelemetry": self.tool_telemetry,
        }
        if self.error is not None:
            wire["error"] = self.error
        return wire

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> ToolResult:
        return cls(
            text_result_for_llm=str(data.get("textResultForLlm", "")),
            result_type=data.get("resultType", "success"),
            error=data.get("error"),
            tool_telemetry=data.get("toolTelemetry") or {},
        )


def result_success(text: str, telemetry: dict[str, Any] | None = None) -> ToolResult:
    return ToolResult(text, "success", tool_telemetry=telemetry or {})


def result_failure(
    text: str, error: str | None = None, telemetry: dict[str, Any] | None = None
) -> ToolResult:
    return ToolResult(text, "failure", error=error, tool_telemetry=telemetry or {})


def result_denied(text: str, telemetry: dict[str, Any] | None = None) -> ToolResult:
    """The tool refused to run for permission reasons."""
    return ToolResult(text, "denied", tool_telemetry=telemetry or {})


def result_rejected(text: str, telemetry: dict[str, Any] | None = None) -> ToolResult:
    """The user rejected the tool call."""
    return ToolResult(text, "rejected", tool_telemetry=telemetry or {})


def unsupported_tool_result(tool_name: str) -> ToolResult:
    return result_failure(
        f"Tool '{tool_name}' is not supported by this client instance.",
        f"tool '{tool_name}' not supported",
    )


def error_result(exc: BaseException) -> ToolResult:
    """Failure envelope for a handler that raised."""
    return result_failure(HANDLER_ERROR_TEXT, str(exc) or type(exc).__name__)


def normalize_tool_result(value: Any) -> ToolResult:
    """Turn whatever a handler returned into a ToolResult.

    - ToolResult: as is
    - dict with textResultForLlm and resultType: parsed from wire form
    - None: failure
    - str: success with that text
    - anything else: success with its JSON encoding
    """
    if isinstance(value, ToolResult):
        return value
    if value is None:
        return result_failure("Tool returned no result", "tool returned no result")
    if isinstance(value, dict) and "textResultForLlm" in value and "resultType" in value:
        return ToolResult.from_wire(value)
    if isinstance(value, str):
        return result_success(value)
    if isinstance(value, BaseModel):
        return result_success(value.model_dump_json())
    try:
        return result_success(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return result_success(str(value))


@dataclass(frozen=True)
class ToolDefinition:
    """A tool exposed to the model for one session."""

    name: str
    description: str
    handler: ToolHandler
    parameters: dict[str, Any] | None = None
    arguments_model: type[BaseModel] | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Tool name must not be empty")

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {"name": self.name, "description": self.description}
        if self.parameters is not None:
            wire["parameters"] = self.parameters
        return wire

    def prepare_arguments(self, arguments: Any) -> Any:
        """Validate raw arguments into arguments_model when one is set.

        Raises:
            pydantic.ValidationError: If the arguments do not match the model.
        """
        if self.arguments_model is None:
            return arguments
        return self.arguments_model.model_validate(arguments or {})


def define_tool(
    func: ToolHandler | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
    parameters: dict[str, Any] | type[BaseModel] | None = None,
) -> Any:
    """Build a ToolDefinition from a handler function.

    Usable as ``@define_tool`` or ``@define_tool(description=...)``. The
    name defaults to the function name and the description to its
    docstring. ``parameters`` may be a JSON schema dict or a pydantic model
    class; with a model, arguments are validated and the handler receives
    the model instance.
    """

    def build(handler: ToolHandler) -> ToolDefinition:
        schema: dict[str, Any] | None
        model: type[BaseModel] | None = None
        if isinstance(parameters, type) and issubclass(parameters, BaseModel):
            model = parameters
            schema = parameters.model_json_schema()
        else:
            schema = parameters
        return ToolDefinition(
            name=name or handler.__name__,
            description=description or (handler.__doc__ or "").strip(),
            handler=handler,
            parameters=schema,
            arguments_model=model,
        )

    if func is not None:
        return build(func)
    return build


__all__ = [
    "ToolDefinition",
    "ToolInvocation",
    "ToolResult",
    "define_tool",
    "error_result",
    "normalize_tool_result",
    "result_denied",
    "result_failure",
    "result_rejected",
    "result_success",
    "unsupported_tool_result",
]
