"""Integration tests for the FastAPI bridge over the stream engine."""

from __future__ import annotations

import time

import httpx
import pytest
from fastapi.testclient import TestClient

from chatstream.core.config import Settings
from chatstream.core.container import build_container
from chatstream.main import create_app
from chatstream.tests.fakes import FakeUpstream, frame


def _build_client(upstream: FakeUpstream, settings: Settings) -> TestClient:
    container = build_container(settings, transport=httpx.MockTransport(upstream.handler))
    return TestClient(create_app(container))


def _wait_idle(client: TestClient, session_id: str, timeout: float = 2.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        response = client.get(f"/api/sessions/{session_id}")
        if response.status_code == 200 and not response.json()["is_streaming"]:
            return response.json()
        if time.monotonic() > deadline:
            raise AssertionError(f"session {session_id} still streaming")
        time.sleep(0.01)


@pytest.fixture
def answer_stream(upstream: FakeUpstream) -> FakeUpstream:
    upstream.stream_chunks = [
        frame({"event": "RunStarted"}),
        frame({"event": "ChatTitle", "title": "Greeting"}),
        frame({"event": "RunResponse", "token": "Hello"}),
        frame({"event": "RunResponse", "token": " world"}),
        frame("[DONE]"),
    ]
    return upstream


def test_health(upstream: FakeUpstream, settings: Settings) -> None:
    with _build_client(upstream, settings) as client:
        response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["live_streams"] == 0


def test_chat_stream_on_existing_session(answer_stream: FakeUpstream, settings: Settings) -> None:
    with _build_client(answer_stream, settings) as client:
        accepted = client.post(
            "/api/chat/stream",
            json={"agent_id": "agent-a", "session_id": "s1", "message": "hi"},
        )
        assert accepted.status_code == 202
        assert accepted.json() == {"session_id": "s1", "accepted": True, "error": None}

        session = _wait_idle(client, "s1")

    assert session["title"] == "Greeting"
    assert [(m["role"], m["content"]) for m in session["messages"]] == [
        ("user", "hi"),
        ("assistant", "Hello world"),
    ]
    assert session["error"] is None
    assert session["version"] > 0


def test_chat_stream_creates_session_when_missing(answer_stream: FakeUpstream, settings: Settings) -> None:
    with _build_client(answer_stream, settings) as client:
        accepted = client.post("/api/chat/stream", json={"agent_id": "agent-a", "message": "hi"})
        assert accepted.status_code == 202
        assert accepted.json()["session_id"] == "sess-new"

        session = _wait_idle(client, "sess-new")

    assert session["messages"][-1]["content"] == "Hello world"


def test_chat_stream_reports_session_creation_failure(upstream: FakeUpstream, settings: Settings) -> None:
    upstream.create_status = 500

    with _build_client(upstream, settings) as client:
        accepted = client.post("/api/chat/stream", json={"agent_id": "agent-a", "message": "hi"})

    assert accepted.status_code == 202
    body = accepted.json()
    assert body["accepted"] is False
    assert body["session_id"] is None
    assert body["error"]


def test_chat_stream_validates_request(upstream: FakeUpstream, settings: Settings) -> None:
    with _build_client(upstream, settings) as client:
        response = client.post("/api/chat/stream", json={"agent_id": "agent-a", "message": ""})

    assert response.status_code == 422


def test_unknown_session_is_404(upstream: FakeUpstream, settings: Settings) -> None:
    with _build_client(upstream, settings) as client:
        assert client.get("/api/sessions/nope").status_code == 404
        assert client.post("/api/sessions/nope/end").status_code == 404
        assert client.delete("/api/sessions/nope").status_code == 404


def test_patch_message_and_clear_session(answer_stream: FakeUpstream, settings: Settings) -> None:
    with _build_client(answer_stream, settings) as client:
        client.post("/api/chat/stream", json={"agent_id": "agent-a", "session_id": "s1", "message": "hi"})
        session = _wait_idle(client, "s1")
        assistant_id = session["messages"][-1]["id"]

        patched = client.patch(
            f"/api/sessions/s1/messages/{assistant_id}",
            json={"feedback": [{"id": "f1", "feedback_type": "good"}]},
        )
        assert patched.status_code == 200
        last = patched.json()["messages"][-1]
        assert last["feedback"][0]["feedback_type"] == "good"
        assert last["content"] == "Hello world"

        missing = client.patch("/api/sessions/s1/messages/unknown", json={"content": "x"})
        assert missing.status_code == 404

        assert client.delete("/api/sessions/s1").status_code == 204
        assert client.get("/api/sessions/s1").status_code == 404


def test_switch_and_end_session(upstream: FakeUpstream, settings: Settings) -> None:
    with _build_client(upstream, settings) as client:
        switched = client.post("/api/sessions/switch", json={"session_id": "s5", "agent_id": "agent-a"})
        assert switched.status_code == 204

        ended = client.post("/api/sessions/s5/end")

    assert ended.status_code == 200
    assert ended.json()["is_streaming"] is False


def test_load_session_history(upstream: FakeUpstream, settings: Settings) -> None:
    upstream.session_details = {"title": "Earlier chat"}
    upstream.session_messages = [
        {"id": "m1", "role": "user", "content": "hi"},
        {"id": "m2", "role": "assistant", "content": "hello"},
    ]

    with _build_client(upstream, settings) as client:
        response = client.post("/api/sessions/s9/load", json={"agent_id": "agent-a"})

    assert response.status_code == 200
    body = response.json()
    assert body["title"] == "Earlier chat"
    assert [m["id"] for m in body["messages"]] == ["m1", "m2"]


def test_sse_stream_emits_session_snapshot(answer_stream: FakeUpstream, settings: Settings) -> None:
    with _build_client(answer_stream, settings) as client:
        client.post("/api/chat/stream", json={"agent_id": "agent-a", "session_id": "s1", "message": "hi"})
        _wait_idle(client, "s1")

        response = client.get("/api/stream/s1")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert "event: state" in response.text
    assert '"session_id": "s1"' in response.text
    assert ": keep-alive" in response.text


def test_sse_stream_reports_missing_session(upstream: FakeUpstream, settings: Settings) -> None:
    with _build_client(upstream, settings) as client:
        response = client.get("/api/stream/ghost")

    assert "event: missing" in response.text
