"""HTTP API layer: start a streamed run for the rendering layer."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, status

from chatstream.api.deps import get_container
from chatstream.core.container import AppContainer
from chatstream.infra.observability.logger import get_logger
from chatstream.protocol.messages import ChatStreamAccepted, ChatStreamRequest
from chatstream.runtime.controller import SESSION_CREATE_FAILED
from chatstream.stream.interpreter import StreamCallbacks

router = APIRouter(prefix="/api", tags=["chat"])
logger = get_logger(__name__)


@router.post(
    "/chat/stream",
    response_model=ChatStreamAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_stream(
    request: ChatStreamRequest,
    container: AppContainer = Depends(get_container),
) -> ChatStreamAccepted:
    logger.info(
        "api.chat.stream session_id=%s agent_id=%s reasoning=%s message=%s",
        request.session_id or "new",
        request.agent_id,
        request.reasoning,
        " ".join(request.message.split())[:160],
    )
    created: asyncio.Future[str] = asyncio.get_running_loop().create_future()

    def on_new_session_created(session_id: str) -> None:
        if not created.done():
            created.set_result(session_id)

    task = container.spawn(
        container.controller.start_stream(
            request.agent_id,
            request.session_id,
            request.message,
            reasoning=request.reasoning,
            callbacks=StreamCallbacks(on_new_session_created=on_new_session_created),
        )
    )
    if request.session_id:
        return ChatStreamAccepted(session_id=request.session_id)

    # A new session id is only known once the upstream creates it.
    await asyncio.wait({created, task}, return_when=asyncio.FIRST_COMPLETED)
    if created.done():
        return ChatStreamAccepted(session_id=created.result())
    created.cancel()
    resolved = task.result()
    if resolved is None:
        return ChatStreamAccepted(
            session_id=None,
            accepted=False,
            error=SESSION_CREATE_FAILED,
        )
    return ChatStreamAccepted(session_id=resolved)
