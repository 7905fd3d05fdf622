"""In-memory, copy-on-write session state for concurrently streaming chats."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any
from uuid import uuid4

from chatstream.protocol.messages import Message, ReasoningStep, ToolCall
from chatstream.runtime.notifier import ChangeNotifier

NEW_CHAT_TITLE = "New Chat"
TEMP_SESSION_PREFIX = "temp-"

_EMPTY_TOOL_CALLS: Mapping[str, ToolCall] = MappingProxyType({})


def freeze_tool_calls(calls: Mapping[str, ToolCall]) -> Mapping[str, ToolCall]:
    return MappingProxyType(dict(calls))


@dataclass(frozen=True)
class ChatSessionState:
    """Immutable snapshot of one session.

    A snapshot is never changed after it is handed out; every mutation
    produces a new snapshot, so readers can iterate `messages` or
    `current_tool_calls` while a stream keeps writing.
    """

    session_id: str
    agent_id: str
    messages: tuple[Message, ...] = ()
    title: str | None = None
    is_streaming: bool = False
    is_agent_responding: bool = False
    is_memory_updating: bool = False
    current_tool_calls: Mapping[str, ToolCall] = field(default_factory=lambda: _EMPTY_TOOL_CALLS)
    current_reasoning_steps: tuple[ReasoningStep, ...] = ()
    debug_message: str | None = None
    error: str | None = None

    @property
    def is_temporary(self) -> bool:
        return self.session_id.startswith(TEMP_SESSION_PREFIX)

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None


# Run-scoped fields restored whenever a stream ends for any reason.
IDLE_RUN_FIELDS: dict[str, Any] = {
    "is_streaming": False,
    "is_agent_responding": False,
    "is_memory_updating": False,
    "current_tool_calls": _EMPTY_TOOL_CALLS,
    "current_reasoning_steps": (),
    "debug_message": None,
}


class SessionStateStore:
    """Session snapshots keyed by session id (or a temporary key).

    Only the stream interpreter and lifecycle controller write here; every
    write swaps the whole snapshot and bumps the change notifier.
    """

    def __init__(self, notifier: ChangeNotifier) -> None:
        self._notifier = notifier
        self._states: dict[str, ChatSessionState] = {}

    @property
    def notifier(self) -> ChangeNotifier:
        return self._notifier

    def get(self, session_id: str | None) -> ChatSessionState | None:
        if not session_id:
            return None
        return self._states.get(session_id)

    def keys(self) -> list[str]:
        return list(self._states)

    def ensure(
        self,
        session_id: str | None,
        agent_id: str,
        *,
        title: str | None = None,
    ) -> ChatSessionState:
        """Return the session, creating it with defaults (and a temporary key when no id is known)."""
        if not session_id:
            session_id = f"{TEMP_SESSION_PREFIX}{uuid4()}"
            title = title or NEW_CHAT_TITLE
        state = self._states.get(session_id)
        if state is None:
            state = ChatSessionState(session_id=session_id, agent_id=agent_id, title=title)
            self._states[session_id] = state
            self._notifier.bump()
        return state

    def update(self, session_id: str, **changes: Any) -> ChatSessionState | None:
        """Replace the snapshot with `changes` applied; no-op for unknown sessions."""
        state = self._states.get(session_id)
        if state is None:
            return None
        if "messages" in changes:
            changes["messages"] = tuple(changes["messages"])
        if "current_reasoning_steps" in changes:
            changes["current_reasoning_steps"] = tuple(changes["current_reasoning_steps"])
        if "current_tool_calls" in changes:
            changes["current_tool_calls"] = freeze_tool_calls(changes["current_tool_calls"])
        updated = replace(state, **changes)
        self._states[session_id] = updated
        self._notifier.bump()
        return updated

    def append_message(self, session_id: str, message: Message) -> ChatSessionState | None:
        state = self._states.get(session_id)
        if state is None:
            return None
        return self.update(session_id, messages=(*state.messages, message))

    def replace_last_message(self, session_id: str, message: Message) -> ChatSessionState | None:
        state = self._states.get(session_id)
        if state is None or not state.messages:
            return None
        return self.update(session_id, messages=(*state.messages[:-1], message))

    def replace_message(self, session_id: str, message_id: str, **fields: Any) -> bool:
        """Amend one message by id; return False when session or message is unknown."""
        state = self._states.get(session_id)
        if state is None:
            return False
        for index, message in enumerate(state.messages):
            if message.id != message_id:
                continue
            amended = message.model_copy(update=fields)
            messages = (*state.messages[:index], amended, *state.messages[index + 1:])
            self.update(session_id, messages=messages)
            return True
        return False

    def remove(self, session_id: str) -> bool:
        """Delete one session by id; return True when it existed."""
        existed = self._states.pop(session_id, None) is not None
        if existed:
            self._notifier.bump()
        return existed
