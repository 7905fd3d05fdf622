"""Shared fixtures: settings, fake upstream, and a wired container per test."""

from __future__ import annotations

from collections.abc import AsyncIterator

import httpx
import pytest
import pytest_asyncio

from chatstream.core.config import Settings
from chatstream.core.container import AppContainer, build_container
from chatstream.tests.fakes import FakeUpstream


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        debug_message_ttl_seconds=0.05,
        sse_keepalive_seconds=0.05,
        sse_max_wait_seconds=1,
    )


@pytest_asyncio.fixture
async def container(upstream: FakeUpstream, settings: Settings) -> AsyncIterator[AppContainer]:
    built = build_container(settings, transport=httpx.MockTransport(upstream.handler))
    yield built
    if upstream.hold_open is not None:
        upstream.hold_open.set()
    if upstream.upload_gate is not None:
        upstream.upload_gate.set()
    await built.controller.dispose()
