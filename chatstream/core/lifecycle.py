"""Lifecycle hooks for startup diagnostics and stream teardown."""

from __future__ import annotations

from chatstream.core.container import AppContainer
from chatstream.infra.observability.logger import get_logger

logger = get_logger(__name__)


def on_startup(container: AppContainer) -> None:
    logger.info(
        "Stream engine ready: base_url=%s profile=%s",
        container.endpoints.base_url,
        container.endpoints.profile_name,
    )


async def on_shutdown(container: AppContainer) -> None:
    live = len(container.controller.live_session_ids())
    await container.controller.dispose()
    logger.info("chatstream shutdown complete. cancelled_streams=%s", live)
