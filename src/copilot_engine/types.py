"""Response types for the server's query methods.

Response models ignore fields they do not know, so newer servers can add
fields without breaking older clients.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class WireModel(BaseModel):
    """Base model for server responses, populated from camelCase keys."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class PingResponse(WireModel):
    message: str | None = None
    timestamp: int | float | str | None = None
    protocol_version: int | None = Field(default=None, alias="protocolVersion")


class StatusResponse(WireModel):
    version: str | None = None
    protocol_version: int | None = Field(default=None, alias="protocolVersion")


class AuthStatus(WireModel):
    is_authenticated: bool = Field(default=False, alias="isAuthenticated")
    auth_type: str | None = Field(default=None, alias="authType")
    host: str | None = None
    login: str | None = None
    status_message: str | None = Field(default=None, alias="statusMessage")


class ModelSupports(WireModel):
    vision: bool | None = None
    reasoning_effort: bool | None = Field(default=None, alias="reasoningEffort")


class VisionLimits(WireModel):
    supported_media_types: list[str] | None = Field(default=None, alias="supportedMediaTypes")
    max_prompt_images: int | None = Field(default=None, alias="maxPromptImages")
    max_prompt_image_size: int | None = Field(default=None, alias="maxPromptImageSize")


class ModelLimits(WireModel):
    max_prompt_tokens: int | None = Field(default=None, alias="maxPromptTokens")
    max_context_window_tokens: int | None = Field(default=None, alias="maxContextWindowTokens")
    vision: VisionLimits | None = None


class ModelCapabilities(WireModel):
    supports: ModelSupports | None = None
    limits: ModelLimits | None = None


class ModelInfo(WireModel):
    """One entry of models.list."""

    id: str
    name: str | None = None
    vendor: str | None = None
    family: str | None = None
    version: str | None = None
    preview: bool | None = None
    capabilities: ModelCapabilities | None = None
    policy: dict[str, Any] | str | None = None
    billing: dict[str, Any] | None = None
    supported_reasoning_efforts: list[str] | None = Field(
        default=None, alias="supportedReasoningEfforts"
    )
    default_reasoning_effort: str | None = Field(default=None, alias="defaultReasoningEffort")

    @property
    def policy_state(self) -> str | None:
        if isinstance(self.policy, dict):
            return self.policy.get("state")
        return self.policy


class ToolInfo(WireModel):
    """One entry of tools.list."""

    name: str
    description: str | None = None
    namespaced_name: str | None = Field(default=None, alias="namespacedName")
    parameters: dict[str, Any] | None = None
    instructions: str | None = None


class QuotaSnapshot(WireModel):
    entitlement_requests: int | float | None = Field(default=None, alias="entitlementRequests")
    used_requests: int | float | None = Field(default=None, alias="usedRequests")
    remaining_percentage: float | None = Field(default=None, alias="remainingPercentage")
    overage: int | float | None = None
    overage_allowed_with_exhausted_quota: bool | None = Field(
        default=None, alias="overageAllowedWithExhaustedQuota"
    )
    reset_date: str | None = Field(default=None, alias="resetDate")


class SessionContext(WireModel):
    """Workspace a session was started in."""

    cwd: str | None = None
    git_root: str | None = Field(default=None, alias="gitRoot")
    repository: str | None = None
    branch: str | None = None


class SessionMetadata(WireModel):
    """One entry of session.list."""

    session_id: str = Field(alias="sessionId")
    start_time: datetime | None = Field(default=None, alias="startTime")
    modified_time: datetime | None = Field(default=None, alias="modifiedTime")
    summary: str | None = None
    is_remote: bool = Field(default=False, alias="isRemote")
    context: SessionContext | None = None


class SessionLifecycleEvent(WireModel):
    """A session.lifecycle notification (created, deleted, updated, ...)."""

    type: str
    session_id: str | None = Field(default=None, alias="sessionId")
    metadata: dict[str, Any] | None = None
