"""HTTP API layer: read-only session snapshots and lifecycle operations for the rendering layer."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status

from chatstream.api.deps import get_container
from chatstream.core.container import AppContainer
from chatstream.infra.observability.logger import get_logger
from chatstream.protocol.messages import (
    ChatSessionDto,
    LoadSessionRequest,
    MessagePatch,
    SwitchSessionRequest,
)
from chatstream.runtime.session_state import ChatSessionState

router = APIRouter(prefix="/api/sessions", tags=["sessions"])
logger = get_logger(__name__)


def to_session_dto(state: ChatSessionState, version: int) -> ChatSessionDto:
    return ChatSessionDto(
        session_id=state.session_id,
        agent_id=state.agent_id,
        version=version,
        title=state.title,
        messages=list(state.messages),
        is_streaming=state.is_streaming,
        is_agent_responding=state.is_agent_responding,
        is_memory_updating=state.is_memory_updating,
        current_tool_calls=list(state.current_tool_calls.values()),
        current_reasoning_steps=list(state.current_reasoning_steps),
        debug_message=state.debug_message,
        error=state.error,
    )


def _require_state(container: AppContainer, session_id: str) -> ChatSessionState:
    state = container.controller.get_session_state(session_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"session '{session_id}' not found")
    return state


@router.get("/{session_id}", response_model=ChatSessionDto)
async def get_session(
    session_id: str,
    container: AppContainer = Depends(get_container),
) -> ChatSessionDto:
    state = _require_state(container, session_id)
    return to_session_dto(state, container.notifier.version)


@router.post("/switch", status_code=status.HTTP_204_NO_CONTENT)
async def switch_session(
    request: SwitchSessionRequest,
    container: AppContainer = Depends(get_container),
) -> Response:
    container.controller.switch_session(request.session_id, request.agent_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{session_id}/load", response_model=ChatSessionDto)
async def load_session(
    session_id: str,
    request: LoadSessionRequest,
    container: AppContainer = Depends(get_container),
) -> ChatSessionDto:
    await container.controller.load_session(session_id, request.agent_id)
    state = _require_state(container, session_id)
    return to_session_dto(state, container.notifier.version)


@router.post("/{session_id}/end", response_model=ChatSessionDto)
async def end_stream(
    session_id: str,
    container: AppContainer = Depends(get_container),
) -> ChatSessionDto:
    state = _require_state(container, session_id)
    container.controller.end_stream(state.session_id)
    logger.info("api.session.end session_id=%s", session_id)
    return to_session_dto(_require_state(container, session_id), container.notifier.version)


@router.patch("/{session_id}/messages/{message_id}", response_model=ChatSessionDto)
async def update_message(
    session_id: str,
    message_id: str,
    patch: MessagePatch,
    container: AppContainer = Depends(get_container),
) -> ChatSessionDto:
    _require_state(container, session_id)
    fields = {key: getattr(patch, key) for key in patch.model_fields_set}
    if not container.controller.update_message(session_id, message_id, **fields):
        raise HTTPException(status_code=404, detail=f"message '{message_id}' not found")
    return to_session_dto(_require_state(container, session_id), container.notifier.version)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def clear_session(
    session_id: str,
    container: AppContainer = Depends(get_container),
) -> Response:
    _require_state(container, session_id)
    container.controller.clear_session(session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
