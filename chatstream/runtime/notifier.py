"""Change notifier: monotonically increasing version observed by readers of session state."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from chatstream.infra.observability.logger import get_logger

logger = get_logger(__name__)

Listener = Callable[[int], None]


class ChangeNotifier:
    """In-process observer hook bumped after every session mutation."""

    def __init__(self) -> None:
        self._version = 0
        self._listeners: list[Listener] = []
        self._changed: asyncio.Event | None = None

    @property
    def version(self) -> int:
        return self._version

    def bump(self) -> int:
        self._version += 1
        for listener in list(self._listeners):
            try:
                listener(self._version)
            except Exception:
                logger.exception("notifier.listener_failed version=%s", self._version)
        if self._changed is not None:
            self._changed.set()
            self._changed = None
        return self._version

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; the returned callable unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def wait_for_change(self, since: int, timeout: float | None = None) -> int:
        """Wait until the version moves past `since`; return the current version (unchanged on timeout)."""
        if self._version > since:
            return self._version
        if self._changed is None:
            self._changed = asyncio.Event()
        changed = self._changed
        try:
            await asyncio.wait_for(changed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self._version
