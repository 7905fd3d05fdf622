"""HTTP API layer: health and readiness endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from chatstream.api.deps import get_container
from chatstream.core.container import AppContainer

router = APIRouter(tags=["health"])


@router.get("/health")
def health(container: AppContainer = Depends(get_container)) -> dict:
    return {
        "status": "ok",
        "env": container.settings.env,
        "version": container.notifier.version,
        "live_streams": len(container.controller.live_session_ids()),
        "sessions": len(container.session_store.keys()),
    }
