"""Protocol layer: conversation models and bridge DTOs shared by runtime and API modules."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, Field


ChatRoleType = Literal["user", "assistant", "system"]
ToolCallStatus = Literal["started", "completed"]
FeedbackType = Literal["good", "bad"]


class Feedback(BaseModel):
    """User feedback attached to a message after the fact."""

    id: str
    user: str | None = None
    feedback_type: FeedbackType
    feedback_text: str = ""
    created_at: str | None = None


class Attachment(BaseModel):
    """Uploaded file descriptor shown next to the user message."""

    id: str
    name: str
    content_type: str | None = None
    url: str | None = None


class ToolCall(BaseModel):
    """One tool invocation observed during a run."""

    id: str
    name: str | None = None
    arguments: Any = None
    status: ToolCallStatus = "started"
    start_time: Any = None
    end_time: Any = None
    result: Any = None


class ReasoningStep(BaseModel):
    """Visible chain-of-thought fragment emitted with token deltas."""

    title: str = ""
    reasoning: str = ""
    action: Any = None
    result: Any = None
    next_action: str | None = Field(
        default=None,
        validation_alias=AliasChoices("next_action", "nextAction"),
    )
    confidence: Any = None


class Message(BaseModel):
    """One conversation entry; only the newest assistant message changes while streaming."""

    id: str
    role: ChatRoleType
    content: str = ""
    feedback: list[Feedback] = Field(default_factory=list)
    tool_calls: list[ToolCall] | None = None
    reasoning_steps: list[ReasoningStep] | None = None
    references: list[dict[str, Any]] | None = None
    attachments: list[Attachment] | None = None
    is_error: bool = False


class ChatStreamRequest(BaseModel):
    """Bridge request that starts one run."""

    agent_id: str = Field(..., min_length=1)
    session_id: str | None = None
    message: str = Field(..., min_length=1, max_length=20000)
    reasoning: bool = False


class ChatStreamAccepted(BaseModel):
    """Bridge response once a run is scheduled."""

    session_id: str | None
    accepted: bool = True
    error: str | None = None


class SwitchSessionRequest(BaseModel):
    session_id: str | None = None
    agent_id: str = Field(..., min_length=1)


class LoadSessionRequest(BaseModel):
    agent_id: str = Field(..., min_length=1)


class MessagePatch(BaseModel):
    """Out-of-band amendment; unset fields are left untouched."""

    content: str | None = None
    feedback: list[Feedback] | None = None
    references: list[dict[str, Any]] | None = None
    is_error: bool | None = None


class ChatSessionDto(BaseModel):
    """Read-only session snapshot served to the rendering layer."""

    session_id: str
    agent_id: str
    version: int
    title: str | None = None
    messages: list[Message] = Field(default_factory=list)
    is_streaming: bool = False
    is_agent_responding: bool = False
    is_memory_updating: bool = False
    current_tool_calls: list[ToolCall] = Field(default_factory=list)
    current_reasoning_steps: list[ReasoningStep] = Field(default_factory=list)
    debug_message: str | None = None
    error: str | None = None
