"""Composition layer: build and hold long-lived service objects for dependency injection."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import httpx

from chatstream.core.config import Settings
from chatstream.core.endpoints import EndpointConfig, resolve_endpoint_config
from chatstream.infra.http.chat_api import ChatApiClient
from chatstream.runtime.controller import StreamController, TokenExpiredHook
from chatstream.runtime.notifier import ChangeNotifier
from chatstream.runtime.session_state import SessionStateStore
from chatstream.runtime.stream_registry import StreamRegistry


@dataclass
class AppContainer:
    """Container object attached to FastAPI app state."""

    settings: Settings
    endpoints: EndpointConfig
    notifier: ChangeNotifier
    session_store: SessionStateStore
    registry: StreamRegistry
    api: ChatApiClient
    controller: StreamController
    background_tasks: set[asyncio.Task] = field(default_factory=set)

    def spawn(self, coro) -> asyncio.Task:
        """Run `coro` detached from the request while keeping a strong reference."""
        task = asyncio.create_task(coro)
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)
        return task


def build_container(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    on_token_expired: TokenExpiredHook | None = None,
) -> AppContainer:
    """Construct runtime dependencies in one place."""
    endpoints = resolve_endpoint_config(settings)
    notifier = ChangeNotifier()
    session_store = SessionStateStore(notifier)
    registry = StreamRegistry()
    api = ChatApiClient(endpoints, transport=transport)
    controller = StreamController(
        api=api,
        store=session_store,
        registry=registry,
        on_token_expired=on_token_expired,
        debug_ttl_seconds=settings.debug_message_ttl_seconds,
    )
    return AppContainer(
        settings=settings,
        endpoints=endpoints,
        notifier=notifier,
        session_store=session_store,
        registry=registry,
        api=api,
        controller=controller,
    )
