"""Process-wide registry of live stream connections and debug-expiry timers."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from uuid import uuid4

from chatstream.infra.observability.logger import get_logger

logger = get_logger(__name__)


class CancelToken:
    """Cancellation flag owned by exactly one stream."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason


@dataclass
class StreamHandle:
    """Connection-side resources of one run."""

    session_id: str
    token: CancelToken = field(default_factory=CancelToken)
    task: asyncio.Task | None = None
    handle_id: str = field(default_factory=lambda: uuid4().hex[:12])


class StreamRegistry:
    """Map session id -> live stream and pending debug timer.

    Constructed once per process and only reached through the lifecycle
    controller. `dispose_all()` must run on shutdown.
    """

    def __init__(self) -> None:
        self._streams: dict[str, StreamHandle] = {}
        self._debug_timers: dict[str, asyncio.TimerHandle] = {}

    def register(self, handle: StreamHandle) -> None:
        previous = self._streams.get(handle.session_id)
        if previous is not None and previous is not handle:
            self._cancel_handle(previous, reason="superseded")
        self._streams[handle.session_id] = handle

    def get(self, session_id: str) -> StreamHandle | None:
        return self._streams.get(session_id)

    def is_current(self, handle: StreamHandle) -> bool:
        return self._streams.get(handle.session_id) is handle

    def release(self, handle: StreamHandle) -> bool:
        """Forget `handle` if it is still the live stream of its session."""
        if self.is_current(handle):
            del self._streams[handle.session_id]
            return True
        return False

    def cancel(self, session_id: str, *, reason: str = "cancelled") -> bool:
        handle = self._streams.pop(session_id, None)
        if handle is None:
            return False
        self._cancel_handle(handle, reason=reason)
        return True

    def live_session_ids(self) -> list[str]:
        return list(self._streams)

    def arm_debug_timer(self, session_id: str, delay: float, callback: Callable[[], None]) -> None:
        """Schedule `callback` after `delay`, replacing any pending timer of the session."""
        self.clear_debug_timer(session_id)
        loop = asyncio.get_running_loop()

        def fire() -> None:
            self._debug_timers.pop(session_id, None)
            callback()

        self._debug_timers[session_id] = loop.call_later(delay, fire)

    def clear_debug_timer(self, session_id: str) -> bool:
        timer = self._debug_timers.pop(session_id, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def has_debug_timer(self, session_id: str) -> bool:
        return session_id in self._debug_timers

    def dispose_all(self) -> int:
        """Force-end every live stream and drop all timers; return how many streams were cancelled."""
        handles = list(self._streams.values())
        self._streams.clear()
        for handle in handles:
            self._cancel_handle(handle, reason="disposed")
        for session_id in list(self._debug_timers):
            self.clear_debug_timer(session_id)
        if handles:
            logger.info("stream.registry.dispose cancelled=%s", len(handles))
        return len(handles)

    def _cancel_handle(self, handle: StreamHandle, *, reason: str) -> None:
        handle.token.cancel(reason)
        if handle.task is not None and not handle.task.done():
            handle.task.cancel()
        logger.debug(
            "stream.cancel session_id=%s handle=%s reason=%s",
            handle.session_id,
            handle.handle_id,
            reason,
        )
