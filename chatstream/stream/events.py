"""Event layer: strongly-typed view of one JSON frame and its discriminator."""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ValidationError

from chatstream.core.errors import ProtocolParseError
from chatstream.infra.observability.logger import get_logger
from chatstream.protocol.messages import ReasoningStep

logger = get_logger(__name__)

EventName = Literal[
    "ChatTitle",
    "RunStarted",
    "RunCompleted",
    "ToolCallStarted",
    "ToolCallCompleted",
    "RunResponse",
    "RunResponseContent",
    "RunContent",
    "MemoryUpdateStarted",
    "MemoryUpdateCompleted",
    "References",
]

EventKind = Literal[
    "error",
    "debug",
    "title",
    "run_started",
    "run_completed",
    "tool_call_started",
    "tool_call_completed",
    "token_delta",
    "memory_update_started",
    "memory_update_completed",
    "references",
    "unknown",
]

_KIND_BY_EVENT: dict[EventName, EventKind] = {
    "ChatTitle": "title",
    "RunStarted": "run_started",
    "RunCompleted": "run_completed",
    "ToolCallStarted": "tool_call_started",
    "ToolCallCompleted": "tool_call_completed",
    "RunResponse": "token_delta",
    "RunResponseContent": "token_delta",
    "RunContent": "token_delta",
    "MemoryUpdateStarted": "memory_update_started",
    "MemoryUpdateCompleted": "memory_update_completed",
    "References": "references",
}


class ToolPayload(BaseModel):
    """`tool` object carried by tool-call lifecycle events."""

    tool_call_id: str | int
    tool_name: str | None = None
    tool_args: Any = None
    result: Any = None


class WireEvent(BaseModel):
    """One decoded JSON frame. Unknown keys are ignored.

    Nested payloads (`tool`, `extra_data`) stay raw here and are validated
    by the accessors below, so an odd sub-payload never costs the frame its
    token delta.
    """

    event: Any = None
    error: Any = None
    debug: Any = None
    title: Any = None
    content: Any = None
    token: Any = None
    run_id: Any = None
    session_id: Any = None
    created_at: Any = None
    tool: Any = None
    extra_data: Any = None

    @property
    def kind(self) -> EventKind:
        if self.error:
            return "error"
        if self.debug:
            return "debug"
        if self.event == "ChatTitle" and not isinstance(self.title, str):
            return "unknown"
        if not isinstance(self.event, str):
            return "unknown"
        return _KIND_BY_EVENT.get(self.event, "unknown")

    @property
    def delta(self) -> str:
        """Token text of a delta event; `token` wins over `content`."""
        value = self.token if self.token is not None else self.content
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)

    @property
    def server_message_id(self) -> str | None:
        value = self.run_id or self.session_id
        return str(value) if value else None

    @property
    def error_text(self) -> str:
        if isinstance(self.error, str):
            return self.error
        if isinstance(self.error, dict):
            message = self.error.get("message") or self.error.get("detail")
            if isinstance(message, str) and message:
                return message
        return json.dumps(self.error, ensure_ascii=False, default=str)

    @property
    def tool_payload(self) -> ToolPayload | None:
        """Typed `tool` object, or None when it is missing or lacks an id."""
        if not isinstance(self.tool, dict):
            return None
        try:
            return ToolPayload.model_validate(self.tool)
        except ValidationError as exc:
            logger.debug("stream.tool_payload_ignored errors=%s", exc.error_count())
            return None

    @property
    def reasoning_steps(self) -> list[ReasoningStep] | None:
        """Valid steps from `extra_data.reasoning_steps`; invalid items are dropped."""
        raw = self._extra("reasoning_steps")
        if not isinstance(raw, list):
            return None
        steps: list[ReasoningStep] = []
        for item in raw:
            try:
                steps.append(ReasoningStep.model_validate(item))
            except ValidationError:
                logger.debug("stream.reasoning_step_ignored item=%s", type(item).__name__)
        return steps

    @property
    def references(self) -> list[dict[str, Any]] | None:
        raw = self._extra("references")
        if not isinstance(raw, list):
            return None
        return [item for item in raw if isinstance(item, dict)]

    def _extra(self, key: str) -> Any:
        if not isinstance(self.extra_data, dict):
            return None
        return self.extra_data.get(key)


def decode_event(payload: str) -> WireEvent:
    """Parse a frame payload; raise ProtocolParseError unless it is a JSON object."""
    try:
        raw = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ProtocolParseError(payload, f"json decode failed: {exc.msg}") from exc
    if not isinstance(raw, dict):
        raise ProtocolParseError(payload, f"expected JSON object, got {type(raw).__name__}")
    return WireEvent.model_validate(raw)
