"""Unit tests for folding decoded frames into session state."""

from __future__ import annotations

import asyncio
import json

import pytest

from chatstream.core.errors import ProtocolParseError, ServerReportedError
from chatstream.protocol.messages import Message
from chatstream.runtime.notifier import ChangeNotifier
from chatstream.runtime.session_state import SessionStateStore
from chatstream.runtime.stream_registry import StreamRegistry
from chatstream.stream.decoder import Frame
from chatstream.stream.interpreter import (
    EventInterpreter,
    RunContext,
    StreamCallbacks,
    inject_error_message,
)


def _frame(payload: dict) -> Frame:
    return Frame(json.dumps(payload))


def _setup(ttl: float = 5.0) -> tuple[SessionStateStore, StreamRegistry, EventInterpreter, RunContext]:
    store = SessionStateStore(ChangeNotifier())
    registry = StreamRegistry()
    interpreter = EventInterpreter(store=store, registry=registry, debug_ttl_seconds=ttl)
    store.ensure("s1", "agent-a")
    store.update("s1", is_streaming=True, is_agent_responding=True)
    store.append_message("s1", Message(id="u1", role="user", content="hi"))
    return store, registry, interpreter, RunContext(session_id="s1", agent_id="agent-a")


def test_token_deltas_accumulate_into_one_assistant_message() -> None:
    store, _, interpreter, run = _setup()

    for token in ("Hel", "lo", " world"):
        assert not interpreter.apply(run, _frame({"event": "RunResponse", "token": token}))

    state = store.get("s1")
    assert [m.role for m in state.messages] == ["user", "assistant"]
    assert state.messages[-1].content == "Hello world"
    assert state.is_agent_responding


def test_token_delta_adopts_server_message_id() -> None:
    store, _, interpreter, run = _setup()

    interpreter.apply(run, _frame({"event": "RunContent", "content": "a"}))
    assert store.get("s1").last_message.id == run.assistant_message_id
    interpreter.apply(run, _frame({"event": "RunContent", "content": "b", "run_id": "run-9"}))

    assert store.get("s1").last_message.id == "run-9"


def test_tool_call_lifecycle_is_tracked_and_snapshotted() -> None:
    store, _, interpreter, run = _setup()

    interpreter.apply(
        run,
        _frame({"event": "ToolCallStarted", "created_at": 1, "tool": {"tool_call_id": "t1", "tool_name": "search", "tool_args": {"q": "x"}}}),
    )
    started = store.get("s1").current_tool_calls["t1"]
    assert started.status == "started"
    assert started.arguments == {"q": "x"}

    interpreter.apply(
        run,
        _frame({"event": "ToolCallCompleted", "created_at": 2, "tool": {"tool_call_id": "t1", "result": "found"}}),
    )
    interpreter.apply(run, _frame({"event": "RunResponse", "token": "done"}))

    state = store.get("s1")
    completed = state.current_tool_calls["t1"]
    assert completed.status == "completed"
    assert completed.result == "found"
    assert completed.end_time == 2
    assert state.last_message.tool_calls[0].id == "t1"


def test_completing_unknown_tool_call_is_ignored() -> None:
    store, _, interpreter, run = _setup()
    before = store.get("s1")

    interpreter.apply(run, _frame({"event": "ToolCallCompleted", "tool": {"tool_call_id": "ghost"}}))

    assert store.get("s1").current_tool_calls == before.current_tool_calls


def test_title_event_updates_title_and_fires_callback() -> None:
    store, _, interpreter, run = _setup()
    titles: list[str] = []
    run.callbacks = StreamCallbacks(on_title_update=titles.append)

    interpreter.apply(run, _frame({"event": "ChatTitle", "title": "Trip plan"}))

    assert store.get("s1").title == "Trip plan"
    assert titles == ["Trip plan"]


def test_run_completed_finalizes_assistant_message() -> None:
    store, _, interpreter, run = _setup()
    interpreter.apply(run, _frame({"event": "RunStarted"}))
    interpreter.apply(run, _frame({"event": "RunResponse", "token": "draft"}))

    interpreter.apply(run, _frame({"event": "RunCompleted", "content": "final answer", "run_id": "r1"}))

    state = store.get("s1")
    assert state.last_message.content == "final answer"
    assert state.last_message.id == "r1"
    assert not state.is_agent_responding
    assert state.is_streaming


def test_memory_update_flags() -> None:
    store, _, interpreter, run = _setup()

    interpreter.apply(run, _frame({"event": "MemoryUpdateStarted"}))
    assert store.get("s1").is_memory_updating
    interpreter.apply(run, _frame({"event": "MemoryUpdateCompleted"}))
    assert not store.get("s1").is_memory_updating


def test_references_attach_to_last_assistant_message_only() -> None:
    store, _, interpreter, run = _setup()
    refs = {"event": "References", "extra_data": {"references": [{"url": "https://example.org"}]}}

    interpreter.apply(run, _frame(refs))
    assert store.get("s1").last_message.references is None

    interpreter.apply(run, _frame({"event": "RunResponse", "token": "answer"}))
    interpreter.apply(run, _frame(refs))
    assert store.get("s1").last_message.references == [{"url": "https://example.org"}]


def test_reasoning_steps_replace_current_list() -> None:
    store, _, interpreter, run = _setup()

    interpreter.apply(
        run,
        _frame({"event": "RunResponse", "token": "a", "extra_data": {"reasoning_steps": [{"title": "one"}]}}),
    )
    interpreter.apply(
        run,
        _frame({"event": "RunResponse", "token": "b", "extra_data": {"reasoning_steps": [{"title": "one"}, {"title": "two"}]}}),
    )

    state = store.get("s1")
    assert [step.title for step in state.current_reasoning_steps] == ["one", "two"]
    assert [step.title for step in state.last_message.reasoning_steps] == ["one", "two"]


def test_done_frame_ends_run_and_fires_completion() -> None:
    store, _, interpreter, run = _setup()
    completed: list[bool] = []
    run.callbacks = StreamCallbacks(on_message_complete=lambda: completed.append(True))

    assert interpreter.apply(run, Frame("[DONE]"))

    state = store.get("s1")
    assert not state.is_streaming
    assert not state.is_agent_responding
    assert run.completed
    assert completed == [True]


def test_error_frame_raises_server_reported_error() -> None:
    store, _, interpreter, run = _setup()
    before = store.get("s1")

    with pytest.raises(ServerReportedError) as exc_info:
        interpreter.apply(run, _frame({"event": "RunContent", "error": "model overloaded"}))

    assert str(exc_info.value) == "model overloaded"
    assert store.get("s1") is before


def test_callback_failure_does_not_break_interpretation() -> None:
    store, _, interpreter, run = _setup()

    def broken(_: str) -> None:
        raise RuntimeError("ui bug")

    run.callbacks = StreamCallbacks(on_title_update=broken)
    interpreter.apply(run, _frame({"event": "ChatTitle", "title": "T"}))

    assert store.get("s1").title == "T"


def test_unknown_event_changes_nothing() -> None:
    store, _, interpreter, run = _setup()
    before = store.get("s1")

    assert not interpreter.apply(run, _frame({"event": "Heartbeat"}))

    assert store.get("s1") is before


def test_malformed_frame_raises_for_caller_to_skip() -> None:
    _, _, interpreter, run = _setup()

    with pytest.raises(ProtocolParseError):
        interpreter.apply(run, Frame("{broken"))


def test_frame_for_removed_session_stops_run() -> None:
    store, _, interpreter, run = _setup()
    store.remove("s1")

    assert interpreter.apply(run, _frame({"event": "RunResponse", "token": "x"}))
    assert store.get("s1") is None


@pytest.mark.asyncio
async def test_debug_message_expires_after_ttl() -> None:
    store, registry, interpreter, run = _setup(ttl=0.02)

    interpreter.apply(run, _frame({"debug": {"step": 1}}))
    assert json.loads(store.get("s1").debug_message) == {"step": 1}
    assert registry.has_debug_timer("s1")

    await asyncio.sleep(0.06)

    assert store.get("s1").debug_message is None


@pytest.mark.asyncio
async def test_next_non_debug_frame_clears_debug_message() -> None:
    store, registry, interpreter, run = _setup(ttl=10)
    interpreter.apply(run, _frame({"debug": "trace"}))

    interpreter.apply(run, _frame({"event": "RunStarted"}))

    assert store.get("s1").debug_message is None
    assert not registry.has_debug_timer("s1")


def test_inject_error_overwrites_empty_assistant_message() -> None:
    store = SessionStateStore(ChangeNotifier())
    store.ensure("s1", "agent-a")
    store.append_message("s1", Message(id="u1", role="user", content="hi"))
    store.append_message("s1", Message(id="a1", role="assistant", content=""))

    assert inject_error_message(store, "s1", "failed")

    messages = store.get("s1").messages
    assert len(messages) == 2
    assert messages[-1].id == "a1"
    assert messages[-1].content == "failed"
    assert messages[-1].is_error


def test_inject_error_leaves_partial_answer_alone() -> None:
    store = SessionStateStore(ChangeNotifier())
    store.ensure("s1", "agent-a")
    store.append_message("s1", Message(id="a1", role="assistant", content="partial"))

    assert not inject_error_message(store, "s1", "failed")
    assert store.get("s1").last_message.content == "partial"


def test_inject_error_into_empty_conversation() -> None:
    store = SessionStateStore(ChangeNotifier())
    store.ensure("s1", "agent-a")

    assert inject_error_message(store, "s1", "failed")
    assert store.get("s1").messages[0].is_error


@pytest.mark.asyncio
async def test_coroutine_callbacks_are_scheduled_on_the_loop() -> None:
    store, _, interpreter, run = _setup()
    titles: list[str] = []

    async def on_title_update(title: str) -> None:
        titles.append(title)

    run.callbacks = StreamCallbacks(on_title_update=on_title_update)
    interpreter.apply(run, _frame({"event": "ChatTitle", "title": "Async"}))
    await asyncio.sleep(0.01)

    assert titles == ["Async"]


def test_delta_frames_with_odd_nested_payloads_still_extend_the_answer() -> None:
    store, _, interpreter, run = _setup()

    interpreter.apply(
        run,
        Frame(
            '{"event":"RunContent","content":"Hello","extra_data":'
            '{"reasoning_steps":[{"title":"t","reasoning":"r","result":{"rows":3}}]}}'
        ),
    )
    interpreter.apply(run, Frame('{"event":"RunContent","content":" there","tool":{"tool_name":"x"}}'))
    interpreter.apply(run, Frame('{"event":"RunContent","token":"!","extra_data":"opaque"}'))

    state = store.get("s1")
    assert [m.role for m in state.messages] == ["user", "assistant"]
    assert state.last_message.content == "Hello there!"
    assert state.current_reasoning_steps[0].result == {"rows": 3}


def test_tool_call_frames_without_id_are_ignored() -> None:
    store, _, interpreter, run = _setup()
    before = store.get("s1")

    assert not interpreter.apply(run, _frame({"event": "ToolCallStarted", "tool": {"tool_name": "search"}}))
    assert not interpreter.apply(run, _frame({"event": "ToolCallCompleted", "tool": None}))

    assert store.get("s1").current_tool_calls == before.current_tool_calls


@pytest.mark.asyncio
async def test_second_debug_frame_restarts_the_expiry_window() -> None:
    store, _, interpreter, run = _setup(ttl=0.2)

    interpreter.apply(run, _frame({"debug": "first"}))
    await asyncio.sleep(0.1)
    interpreter.apply(run, _frame({"debug": "second"}))

    # Past the first frame's expiry, before the second's.
    await asyncio.sleep(0.15)
    assert json.loads(store.get("s1").debug_message) == "second"

    await asyncio.sleep(0.12)
    assert store.get("s1").debug_message is None
