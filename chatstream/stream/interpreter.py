"""Stream layer: fold decoded frames into per-session conversational state."""

from __future__ import annotations

import asyncio
import inspect
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from chatstream.core.errors import ServerReportedError
from chatstream.infra.observability.logger import get_logger
from chatstream.protocol.messages import Message, ToolCall
from chatstream.runtime.session_state import ChatSessionState, SessionStateStore
from chatstream.runtime.stream_registry import StreamRegistry
from chatstream.stream.decoder import Frame
from chatstream.stream.events import WireEvent, decode_event

logger = get_logger(__name__)

DEFAULT_DEBUG_TTL_SECONDS = 5.0


@dataclass
class StreamCallbacks:
    """Optional side effects of one `start_stream` call."""

    on_new_session_created: Callable[[str], Any] | None = None
    on_title_update: Callable[[str | None], Any] | None = None
    on_message_complete: Callable[[], Any] | None = None


@dataclass
class RunContext:
    """Per-run bookkeeping shared by the read loop and the interpreter."""

    session_id: str
    agent_id: str
    callbacks: StreamCallbacks = field(default_factory=StreamCallbacks)
    assistant_message_id: str = field(default_factory=lambda: f"assistant-{uuid4()}")
    assistant_created: bool = False
    frames_applied: int = 0
    completed: bool = False


_pending_callbacks: set[asyncio.Task] = set()


def _log_callback_result(name: str, task: asyncio.Task) -> None:
    _pending_callbacks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("stream.callback_failed callback=%s error=%s", name, exc, exc_info=exc)


def invoke_callback(name: str, callback: Callable[..., Any] | None, *args: Any) -> None:
    """Call a UI callback; coroutine results run as detached tasks. Failures are logged only."""
    if callback is None:
        return
    try:
        result = callback(*args)
    except Exception:
        logger.exception("stream.callback_failed callback=%s", name)
        return
    if inspect.isawaitable(result):
        task = asyncio.ensure_future(result)
        _pending_callbacks.add(task)
        task.add_done_callback(lambda done: _log_callback_result(name, done))


def inject_error_message(store: SessionStateStore, session_id: str, text: str) -> bool:
    """Make a failure visible in-line; return True when the conversation changed.

    A new flagged assistant message is appended after a user message (or
    into an empty conversation); an empty in-progress assistant message is
    overwritten in place instead of duplicated.
    """
    state = store.get(session_id)
    if state is None:
        return False
    last = state.last_message
    if last is None or last.role == "user":
        store.append_message(
            session_id,
            Message(id=str(uuid4()), role="assistant", content=text, is_error=True),
        )
        return True
    if last.role == "assistant" and not last.content.strip():
        store.replace_last_message(
            session_id,
            last.model_copy(update={"content": text, "is_error": True}),
        )
        return True
    return False


class EventInterpreter:
    """Apply exactly one state transition per frame.

    `apply` returns True when the run must stop reading. It raises
    ProtocolParseError for malformed frames, which the caller skips, and
    ServerReportedError for error frames, which end the run.
    """

    def __init__(
        self,
        *,
        store: SessionStateStore,
        registry: StreamRegistry,
        debug_ttl_seconds: float = DEFAULT_DEBUG_TTL_SECONDS,
    ) -> None:
        self._store = store
        self._registry = registry
        self._debug_ttl_seconds = debug_ttl_seconds
        self._handlers: dict[str, Callable[[RunContext, ChatSessionState, WireEvent], None]] = {
            "title": self._on_title,
            "run_started": self._on_run_started,
            "run_completed": self._on_run_completed,
            "tool_call_started": self._on_tool_call_started,
            "tool_call_completed": self._on_tool_call_completed,
            "token_delta": self._on_token_delta,
            "memory_update_started": self._on_memory_update_started,
            "memory_update_completed": self._on_memory_update_completed,
            "references": self._on_references,
        }

    def apply(self, run: RunContext, frame: Frame) -> bool:
        state = self._store.get(run.session_id)
        if state is None:
            logger.info("stream.session_gone session_id=%s", run.session_id)
            return True
        if frame.is_done:
            return self._on_done(run)

        event = decode_event(frame.payload)
        kind = event.kind
        run.frames_applied += 1
        logger.debug("stream.frame session_id=%s kind=%s event=%s", run.session_id, kind, event.event)

        if kind == "error":
            raise ServerReportedError(event.error_text)
        if kind == "debug":
            self._on_debug(run, event)
            return False

        if state.debug_message:
            self._registry.clear_debug_timer(run.session_id)
            state = self._store.update(run.session_id, debug_message=None) or state

        handler = self._handlers.get(kind)
        if handler is not None:
            handler(run, state, event)
        return False

    def expire_debug_message(self, session_id: str) -> None:
        state = self._store.get(session_id)
        if state is not None and state.debug_message is not None:
            self._store.update(session_id, debug_message=None)

    def _on_done(self, run: RunContext) -> bool:
        self._store.update(run.session_id, is_streaming=False, is_agent_responding=False)
        run.completed = True
        invoke_callback("on_message_complete", run.callbacks.on_message_complete)
        return True

    def _on_debug(self, run: RunContext, event: WireEvent) -> None:
        dump = json.dumps(event.debug, indent=2, ensure_ascii=False, default=str)
        self._store.update(run.session_id, debug_message=dump)
        session_id = run.session_id
        self._registry.arm_debug_timer(
            session_id,
            self._debug_ttl_seconds,
            lambda: self.expire_debug_message(session_id),
        )

    def _on_title(self, run: RunContext, state: ChatSessionState, event: WireEvent) -> None:
        self._store.update(run.session_id, title=event.title)
        invoke_callback("on_title_update", run.callbacks.on_title_update, event.title)

    def _on_run_started(self, run: RunContext, state: ChatSessionState, event: WireEvent) -> None:
        self._store.update(run.session_id, is_agent_responding=True)

    def _on_run_completed(self, run: RunContext, state: ChatSessionState, event: WireEvent) -> None:
        changes: dict[str, Any] = {"is_agent_responding": False}
        last = state.last_message
        if event.content and last is not None and last.role == "assistant":
            content = event.content if isinstance(event.content, str) else str(event.content)
            final = last.model_copy(
                update={
                    "content": content,
                    "id": event.server_message_id or last.id,
                    "tool_calls": list(state.current_tool_calls.values()),
                    "reasoning_steps": list(state.current_reasoning_steps),
                }
            )
            changes["messages"] = (*state.messages[:-1], final)
        self._store.update(run.session_id, **changes)

    def _on_tool_call_started(self, run: RunContext, state: ChatSessionState, event: WireEvent) -> None:
        tool = event.tool_payload
        if tool is None:
            return
        call = ToolCall(
            id=str(tool.tool_call_id),
            name=tool.tool_name,
            arguments=tool.tool_args,
            status="started",
            start_time=event.created_at,
        )
        calls = dict(state.current_tool_calls)
        calls[call.id] = call
        self._store.update(run.session_id, current_tool_calls=calls)

    def _on_tool_call_completed(self, run: RunContext, state: ChatSessionState, event: WireEvent) -> None:
        tool = event.tool_payload
        if tool is None:
            return
        call_id = str(tool.tool_call_id)
        existing = state.current_tool_calls.get(call_id)
        if existing is None:
            logger.debug("stream.tool_call_unknown session_id=%s call_id=%s", run.session_id, call_id)
            return
        calls = dict(state.current_tool_calls)
        calls[call_id] = existing.model_copy(
            update={"status": "completed", "result": tool.result, "end_time": event.created_at}
        )
        self._store.update(run.session_id, current_tool_calls=calls)

    def _on_token_delta(self, run: RunContext, state: ChatSessionState, event: WireEvent) -> None:
        delta = event.delta
        steps = state.current_reasoning_steps
        reasoning_steps = event.reasoning_steps
        if reasoning_steps is not None:
            steps = tuple(reasoning_steps)
        tool_snapshot = list(state.current_tool_calls.values())

        last = state.last_message
        if run.assistant_created and last is not None and last.role == "assistant":
            amended = last.model_copy(
                update={
                    "content": last.content + delta,
                    "id": event.server_message_id or last.id,
                    "tool_calls": tool_snapshot,
                    "reasoning_steps": list(steps),
                }
            )
            messages = (*state.messages[:-1], amended)
        else:
            seeded = Message(
                id=run.assistant_message_id,
                role="assistant",
                content=delta,
                tool_calls=tool_snapshot,
                reasoning_steps=list(steps),
            )
            messages = (*state.messages, seeded)
            run.assistant_created = True

        self._store.update(
            run.session_id,
            messages=messages,
            current_reasoning_steps=steps,
            is_agent_responding=True,
        )

    def _on_memory_update_started(self, run: RunContext, state: ChatSessionState, event: WireEvent) -> None:
        self._store.update(run.session_id, is_memory_updating=True)

    def _on_memory_update_completed(self, run: RunContext, state: ChatSessionState, event: WireEvent) -> None:
        self._store.update(run.session_id, is_memory_updating=False)

    def _on_references(self, run: RunContext, state: ChatSessionState, event: WireEvent) -> None:
        references = event.references
        last = state.last_message
        if not references or last is None or last.role != "assistant":
            return
        self._store.replace_last_message(
            run.session_id,
            last.model_copy(update={"references": references}),
        )
