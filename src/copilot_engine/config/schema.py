"""Typed option models for the client and its sessions.

All models reject unknown keys. Python field names are snake_case; the
camelCase alias of each field is its name on the wire, and both spellings
are accepted as input.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    model_validator,
)

from copilot_engine.errors import ConfigurationError
from copilot_engine.session.tools import ToolDefinition
from copilot_engine.transport import parse_cli_url

LogLevel = Literal["none", "error", "warning", "info", "debug", "all"]
ReasoningEffort = Literal["low", "medium", "high", "xhigh"]


class EngineModel(BaseModel):
    """Base model: strict keys, populate by field name or wire alias."""

    model_config = ConfigDict(
        populate_by_name=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )

    def to_wire(self) -> dict[str, Any]:
        """Dump with wire (camelCase) keys, leaving out unset values."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# =============================================================================
# Client options
# =============================================================================


class ClientOptions(EngineModel):
    """How to reach the CLI server and how the client behaves."""

    cli_path: str = "copilot"
    cli_args: list[str] = Field(default_factory=list)
    cli_url: str | None = None
    cwd: str | None = None
    port: int = Field(default=0, ge=0, le=65535)
    use_stdio: bool = True
    log_level: LogLevel = "info"
    auto_start: bool = True
    auto_restart: bool = True
    env: dict[str, str | None] | None = None
    github_token: str | None = None
    use_logged_in_user: bool | None = None
    notification_queue_size: int = Field(default=4096, gt=0)
    event_buffer_size: int = Field(default=1024, gt=0)
    tool_timeout: float = Field(default=120.0, gt=0)
    request_timeout: float | None = Field(default=None, gt=0)
    startup_timeout: float = Field(default=60.0, gt=0)
    stop_timeout: float = Field(default=5.0, gt=0)

    @model_validator(mode="after")
    def _check_combinations(self) -> ClientOptions:
        explicit = self.model_fields_set
        if self.cli_url is not None:
            if "cli_path" in explicit or ("use_stdio" in explicit and self.use_stdio):
                raise ConfigurationError(
                    "cli_url is mutually exclusive with use_stdio and cli_path"
                )
            if self.github_token is not None or self.use_logged_in_user is not None:
                raise ConfigurationError(
                    "github_token and use_logged_in_user cannot be used with cli_url "
                    "(an external server manages its own auth)"
                )
            parse_cli_url(self.cli_url)
        return self

    @property
    def is_external(self) -> bool:
        """True when attaching to an already running server."""
        return self.cli_url is not None

    @property
    def uses_stdio(self) -> bool:
        return self.cli_url is None and self.use_stdio

    @property
    def logged_in_user(self) -> bool:
        """Whether the server may use the stored login; off by default with a token."""
        if self.use_logged_in_user is not None:
            return self.use_logged_in_user
        return self.github_token is None


# =============================================================================
# Session options
# =============================================================================


class SystemMessageConfig(EngineModel):
    """System prompt handling: append to the default or replace it."""

    mode: Literal["append", "replace"] = "append"
    content: str | None = None


class AzureOptions(EngineModel):
    api_version: str | None = Field(default=None, alias="apiVersion")


class ProviderConfig(EngineModel):
    """Bring-your-own-key model provider."""

    base_url: str = Field(alias="baseUrl", min_length=1)
    provider_type: Literal["openai", "azure", "anthropic"] | None = Field(
        default=None, alias="type"
    )
    wire_api: Literal["completions", "responses"] | None = Field(default=None, alias="wireApi")
    api_key: str | None = Field(default=None, alias="apiKey")
    bearer_token: str | None = Field(default=None, alias="bearerToken")
    azure: AzureOptions | None = None


class MCPLocalServerConfig(EngineModel):
    """MCP server launched by the CLI as a local process."""

    command: str = Field(min_length=1)
    args: list[str] = Field(default_factory=list)
    tools: list[str]
    server_type: Literal["local", "stdio"] | None = Field(default=None, alias="type")
    timeout: int | None = Field(default=None, gt=0)
    env: dict[str, str] | None = None
    cwd: str | None = None


class MCPRemoteServerConfig(EngineModel):
    """MCP server reached over HTTP or SSE."""

    server_type: Literal["http", "sse"] = Field(alias="type")
    url: str = Field(min_length=1)
    tools: list[str]
    timeout: int | None = Field(default=None, gt=0)
    headers: dict[str, str] | None = None


MCPServerConfig = MCPLocalServerConfig | MCPRemoteServerConfig


class CustomAgentConfig(EngineModel):
    name: str = Field(min_length=1)
    prompt: str = Field(min_length=1)
    display_name: str | None = Field(default=None, alias="displayName")
    description: str | None = None
    tools: list[str] | None = None
    mcp_servers: dict[str, MCPServerConfig] | None = Field(default=None, alias="mcpServers")
    infer: bool | None = None


class LargeOutputConfig(EngineModel):
    """Spill oversized tool output to files instead of the context."""

    enabled: bool | None = None
    max_size_bytes: int | None = Field(default=None, gt=0, alias="maxSizeBytes")
    output_dir: str | None = Field(default=None, alias="outputDir")


class InfiniteSessionConfig(EngineModel):
    """Automatic context compaction thresholds (fractions of the window)."""

    enabled: bool | None = None
    background_compaction_threshold: float | None = Field(
        default=None, ge=0.0, le=1.0, alias="backgroundCompactionThreshold"
    )
    buffer_exhaustion_threshold: float | None = Field(
        default=None, ge=0.0, le=1.0, alias="bufferExhaustionThreshold"
    )


class SessionHooks(EngineModel):
    """Callbacks for the server's lifecycle hooks.

    Each hook is called with (input, {"session_id": ...}) and may be a
    plain function or a coroutine function. Its return value is sent back
    as the hook output.
    """

    on_pre_tool_use: Callable[..., Any] | None = None
    on_post_tool_use: Callable[..., Any] | None = None
    on_user_prompt_submitted: Callable[..., Any] | None = None
    on_session_start: Callable[..., Any] | None = None
    on_session_end: Callable[..., Any] | None = None
    on_error_occurred: Callable[..., Any] | None = None

    def any_set(self) -> bool:
        return any(getattr(self, name) is not None for name in type(self).model_fields)


# Keys that are translated by hand rather than dumped
_CALLBACK_FIELDS = {"on_permission_request", "on_user_input_request", "hooks"}
_CUSTOM_FIELDS = _CALLBACK_FIELDS | {"tools", "request_permission"}


class SessionConfig(EngineModel):
    """Options for session.create."""

    session_id: str | None = Field(default=None, alias="sessionId")
    client_name: str | None = Field(default=None, alias="clientName")
    model: str | None = None
    tools: list[ToolDefinition] = Field(default_factory=list)
    system_message: SystemMessageConfig | None = Field(default=None, alias="systemMessage")
    available_tools: list[str] | None = Field(default=None, alias="availableTools")
    excluded_tools: list[str] | None = Field(default=None, alias="excludedTools")
    provider: ProviderConfig | None = None
    on_permission_request: Callable[..., Any] | None = Field(default=None, exclude=True)
    request_permission: bool | None = Field(default=None, alias="requestPermission")
    streaming: bool | None = None
    mcp_servers: dict[str, MCPServerConfig] | None = Field(default=None, alias="mcpServers")
    custom_agents: list[CustomAgentConfig] | None = Field(default=None, alias="customAgents")
    config_dir: str | None = Field(default=None, alias="configDir")
    skill_directories: list[str] | None = Field(default=None, alias="skillDirectories")
    disabled_skills: list[str] | None = Field(default=None, alias="disabledSkills")
    large_output: LargeOutputConfig | None = Field(default=None, alias="largeOutput")
    working_directory: str | None = Field(default=None, alias="workingDirectory")
    infinite_sessions: InfiniteSessionConfig | None = Field(
        default=None, alias="infiniteSessions"
    )
    reasoning_effort: ReasoningEffort | None = Field(default=None, alias="reasoningEffort")
    on_user_input_request: Callable[..., Any] | None = Field(default=None, exclude=True)
    hooks: SessionHooks | None = Field(default=None, exclude=True)

    @model_validator(mode="after")
    def _check_session(self) -> SessionConfig:
        if self.provider is not None and not self.model:
            raise ConfigurationError("model is required when a custom provider is specified")
        if self.request_permission and self.on_permission_request is None:
            raise ConfigurationError(
                "request_permission is set but no on_permission_request handler was given"
            )
        names = [tool.name for tool in self.tools]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate tool names: {', '.join(duplicates)}")
        return self

    def to_wire(self) -> dict[str, Any]:
        """Build session.create / session.resume params."""
        params = self.model_dump(
            by_alias=True, exclude_none=True, exclude=_CUSTOM_FIELDS, mode="json"
        )
        if self.tools:
            params["tools"] = [tool.to_wire() for tool in self.tools]
        params["requestPermission"] = (
            self.request_permission
            if self.request_permission is not None
            else self.on_permission_request is not None
        )
        params["requestUserInput"] = self.on_user_input_request is not None
        params["hooks"] = self.hooks is not None and self.hooks.any_set()
        params["envValueMode"] = "direct"
        return params


class ResumeSessionConfig(SessionConfig):
    """Options for session.resume; the session id is given separately."""

    disable_resume: bool | None = Field(default=None, alias="disableResume")


# =============================================================================
# Message attachments
# =============================================================================


class FileAttachment(EngineModel):
    attachment_type: Literal["file"] = Field(default="file", alias="type")
    path: str
    display_name: str | None = Field(default=None, alias="displayName")


class DirectoryAttachment(EngineModel):
    attachment_type: Literal["directory"] = Field(default="directory", alias="type")
    path: str
    display_name: str | None = Field(default=None, alias="displayName")


class SelectionPosition(EngineModel):
    line: int = Field(ge=0)
    character: int = Field(ge=0)


class SelectionRange(EngineModel):
    start: SelectionPosition
    end: SelectionPosition


class SelectionAttachment(EngineModel):
    """A range of text inside a file."""

    attachment_type: Literal["selection"] = Field(default="selection", alias="type")
    file_path: str = Field(alias="filePath")
    display_name: str | None = Field(default=None, alias="displayName")
    selection: SelectionRange | None = None
    text: str | None = None


Attachment = Annotated[
    FileAttachment | DirectoryAttachment | SelectionAttachment,
    Field(discriminator="attachment_type"),
]

_ATTACHMENTS = TypeAdapter(list[Attachment])


def attachments_to_wire(attachments: list[Any]) -> list[dict[str, Any]]:
    """Validate attachment models or dicts and dump them with wire keys.

    Raises:
        ConfigurationError: If an attachment is malformed.
    """
    try:
        parsed = _ATTACHMENTS.validate_python(attachments)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid attachments: {e}") from e
    return [attachment.to_wire() for attachment in parsed]


class SessionListFilter(EngineModel):
    """Narrow session.list by workspace context."""

    cwd: str | None = None
    git_root: str | None = Field(default=None, alias="gitRoot")
    repository: str | None = None
    branch: str | None = None
