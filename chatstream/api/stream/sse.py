"""Stream API layer: SSE feed of session snapshots with heartbeat."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import StreamingResponse

from chatstream.api.deps import get_container
from chatstream.api.http.sessions import to_session_dto
from chatstream.core.container import AppContainer

router = APIRouter(tags=["stream"])


def _format_sse(*, event: str, data: dict, event_id: int) -> str:
    body = json.dumps(data, ensure_ascii=False)
    return f"id: {event_id}\nevent: {event}\ndata: {body}\n\n"


@router.get("/api/stream/{session_id}")
async def stream(
    session_id: str,
    last_event_id: int | None = Query(default=None),
    last_event_id_header: str | None = Header(default=None, alias="Last-Event-ID"),
    container: AppContainer = Depends(get_container),
) -> StreamingResponse:
    async def iterator() -> AsyncIterator[str]:
        cursor = last_event_id
        if cursor is None and isinstance(last_event_id_header, str):
            try:
                cursor = int(last_event_id_header)
            except ValueError:
                cursor = None
        notifier = container.notifier
        idle_budget = container.settings.sse_max_wait_seconds
        keepalive = container.settings.sse_keepalive_seconds
        waited = 0.0
        if cursor is None:
            # Fresh subscribers get the current snapshot first.
            cursor = -1
        while waited < idle_budget:
            version = await notifier.wait_for_change(cursor, timeout=keepalive)
            if version > cursor:
                cursor = version
                state = container.controller.get_session_state(session_id)
                if state is None:
                    yield _format_sse(
                        event="missing",
                        data={"session_id": session_id, "version": version},
                        event_id=version,
                    )
                else:
                    dto = to_session_dto(state, version)
                    yield _format_sse(event="state", data=dto.model_dump(mode="json"), event_id=version)
            else:
                yield ": keep-alive\n\n"
                waited += keepalive

    return StreamingResponse(iterator(), media_type="text/event-stream")
