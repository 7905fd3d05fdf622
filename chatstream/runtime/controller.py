"""Stream lifecycle controller: one cancellable read loop per session, folded into the session store."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping
from typing import Any
from uuid import uuid4

import httpx
from pydantic import ValidationError

from chatstream.core.errors import (
    AuthExpiredError,
    ProtocolParseError,
    ServerReportedError,
    SessionCreationError,
    StreamHttpError,
    StreamTransportError,
    UploadError,
)
from chatstream.infra.http.chat_api import AUTH_EXPIRED_STATUSES, AttachmentFile, ChatApiClient
from chatstream.infra.observability.logger import get_logger
from chatstream.protocol.messages import Feedback, Message, ReasoningStep, ToolCall
from chatstream.runtime.notifier import ChangeNotifier
from chatstream.runtime.session_state import (
    IDLE_RUN_FIELDS,
    NEW_CHAT_TITLE,
    ChatSessionState,
    SessionStateStore,
)
from chatstream.runtime.stream_registry import StreamHandle, StreamRegistry
from chatstream.stream.decoder import FrameDecoder
from chatstream.stream.interpreter import (
    DEFAULT_DEBUG_TTL_SECONDS,
    EventInterpreter,
    RunContext,
    StreamCallbacks,
    inject_error_message,
    invoke_callback,
)

logger = get_logger(__name__)

SESSION_CREATE_FAILED = "Failed to create chat session. Please check your connection and try again."
UPLOAD_FAILED = "File upload failed."
STREAM_FAILED = "Sorry, there was an error processing your request."
LOAD_FAILED = "Failed to load chat. Please try refreshing."
LOAD_FAILED_TITLE = "Chat"

TokenExpiredHook = Callable[[], Awaitable[None] | None]


def _short(text: str | None, *, limit: int = 120) -> str:
    if not isinstance(text, str):
        return ""
    compact = " ".join(text.split())
    if len(compact) <= limit:
        return compact
    return f"{compact[: max(1, limit - 3)].rstrip()}..."


def _history_message(raw: dict[str, Any]) -> Message:
    message_id = raw.get("id") or raw.get("timestamp") or uuid4()
    return Message(
        id=str(message_id),
        role=raw["role"],
        content=str(raw.get("content") or ""),
        feedback=[Feedback.model_validate(item) for item in raw.get("feedback") or []],
    )


class StreamController:
    """Owns every session's connection, cancellation token, and read loop.

    At most one stream is live per session; starting another one for the
    same session cancels the first. Failures never escape: they end up in
    the session's `error` field (cancellation excepted).
    """

    def __init__(
        self,
        *,
        api: ChatApiClient,
        store: SessionStateStore,
        registry: StreamRegistry,
        on_token_expired: TokenExpiredHook | None = None,
        debug_ttl_seconds: float = DEFAULT_DEBUG_TTL_SECONDS,
    ) -> None:
        self._api = api
        self._store = store
        self._registry = registry
        self._on_token_expired = on_token_expired
        self._interpreter = EventInterpreter(
            store=store,
            registry=registry,
            debug_ttl_seconds=debug_ttl_seconds,
        )
        self._active_session_id: str | None = None
        self._active_agent_id: str | None = None

    @property
    def notifier(self) -> ChangeNotifier:
        return self._store.notifier

    @property
    def version(self) -> int:
        return self._store.notifier.version

    @property
    def active_session_id(self) -> str | None:
        return self._active_session_id

    @property
    def active_agent_id(self) -> str | None:
        return self._active_agent_id

    def live_session_ids(self) -> list[str]:
        return self._registry.live_session_ids()

    async def start_stream(
        self,
        agent_id: str,
        session_id: str | None,
        message: str,
        attachments: list[AttachmentFile] | None = None,
        reasoning: bool = False,
        callbacks: StreamCallbacks | None = None,
    ) -> str | None:
        """Send `message` and stream the reply; return the resolved session id.

        Returns None only when no session id could be obtained; the failure
        is then recorded on a fresh temporary session.
        """
        callbacks = callbacks or StreamCallbacks()
        if session_id:
            self.end_stream(session_id)

        resolved = session_id
        if not resolved:
            try:
                resolved = await self._api.create_session(agent_id)
            except AuthExpiredError as exc:
                await self._handle_token_expired()
                self._record_session_failure(agent_id, exc)
                return None
            except SessionCreationError as exc:
                self._record_session_failure(agent_id, exc)
                return None
            self._store.ensure(resolved, agent_id, title=NEW_CHAT_TITLE)
            self._store.update(resolved, title=NEW_CHAT_TITLE, agent_id=agent_id)
            invoke_callback("on_new_session_created", callbacks.on_new_session_created, resolved)

        self._store.ensure(resolved, agent_id)
        self._store.update(resolved, error=None, is_streaming=True, is_agent_responding=True)
        self._active_session_id = resolved
        self._active_agent_id = agent_id
        logger.info(
            "stream.start session_id=%s agent_id=%s reasoning=%s attachments=%s message=%s",
            resolved,
            agent_id,
            reasoning,
            len(attachments or []),
            _short(message, limit=160),
        )

        # Claim the session before any await so a newer call can supersede this one.
        handle = StreamHandle(session_id=resolved)
        self._registry.register(handle)

        uploaded = None
        if attachments:
            try:
                uploaded = await self._api.upload_attachments(
                    attachments,
                    session_id=resolved,
                    ephemeral=True,
                ) or None
            except UploadError as exc:
                if not handle.token.cancelled:
                    logger.warning("stream.upload_failed session_id=%s error=%s", resolved, exc)
                    self._store.update(resolved, error=UPLOAD_FAILED)
            except asyncio.CancelledError:
                self._registry.release(handle)
                raise
        if handle.token.cancelled:
            logger.info(
                "stream.aborted_before_send session_id=%s handle=%s reason=%s",
                resolved,
                handle.handle_id,
                handle.token.reason,
            )
            return resolved

        self._store.append_message(
            resolved,
            Message(id=str(uuid4()), role="user", content=message, attachments=uploaded),
        )

        run = RunContext(session_id=resolved, agent_id=agent_id, callbacks=callbacks)
        payload = {
            "agent_id": agent_id,
            "message": message,
            "session_id": resolved,
            "reasoning": reasoning,
        }
        handle.task = asyncio.create_task(
            self._pump(handle, run, payload),
            name=f"chatstream:{resolved}",
        )
        try:
            await handle.task
        except asyncio.CancelledError:
            if not handle.token.cancelled:
                raise
            logger.info(
                "stream.aborted session_id=%s handle=%s reason=%s",
                resolved,
                handle.handle_id,
                handle.token.reason,
            )
        return resolved

    def end_stream(self, session_id: str | None) -> None:
        """Cancel the live request (if any) and reset run-scoped fields; safe to repeat."""
        if not session_id:
            return
        cancelled = self._registry.cancel(session_id, reason="end_stream")
        self._registry.clear_debug_timer(session_id)
        if self._store.get(session_id) is not None:
            self._store.update(session_id, **IDLE_RUN_FIELDS)
        if cancelled:
            logger.info("stream.end session_id=%s", session_id)

    def switch_session(self, session_id: str | None, agent_id: str) -> None:
        if self._active_session_id == session_id and self._active_agent_id == agent_id:
            return
        if self._active_session_id and self._active_session_id != session_id:
            self.end_stream(self._active_session_id)
        self._active_session_id = session_id
        self._active_agent_id = agent_id
        if session_id:
            self._store.ensure(session_id, agent_id)
        self._store.notifier.bump()

    def clear_session(self, session_id: str | None) -> None:
        if not session_id:
            return
        self.end_stream(session_id)
        self._store.remove(session_id)
        if self._active_session_id == session_id:
            self._active_session_id = None

    def update_message(self, session_id: str | None, message_id: str, **fields: Any) -> bool:
        if not session_id:
            return False
        return self._store.replace_message(session_id, message_id, **fields)

    async def load_session(self, session_id: str, agent_id: str) -> None:
        """Restore title and history from the REST collaborators."""
        self._store.ensure(session_id, agent_id)
        self._store.update(session_id, error=None)
        try:
            details = await self._api.get_session(session_id)
            title = details.get("title") if isinstance(details, dict) else None
            self._store.update(session_id, title=title)
            raw_messages = await self._api.get_session_messages(session_id)
            loaded = [
                _history_message(raw)
                for raw in raw_messages
                if raw.get("role") in {"user", "assistant"}
            ]
        except AuthExpiredError as exc:
            await self._handle_token_expired()
            self._record_load_failure(session_id, exc)
            return
        except (httpx.HTTPError, StreamTransportError, ValidationError, ValueError) as exc:
            self._record_load_failure(session_id, exc)
            return

        state = self._store.get(session_id)
        if state is None:
            return
        existing_ids = {item.id for item in state.messages}
        if state.messages and existing_ids == {item.id for item in loaded}:
            self._store.notifier.bump()
            return
        self._store.update(session_id, messages=loaded)
        logger.info("stream.session_loaded session_id=%s messages=%s", session_id, len(loaded))

    async def dispose(self) -> None:
        """Force-end every live stream, then close the HTTP client."""
        tasks = []
        for session_id in self._registry.live_session_ids():
            handle = self._registry.get(session_id)
            if handle is not None and handle.task is not None:
                tasks.append(handle.task)
        self._registry.dispose_all()
        for session_id in self._store.keys():
            state = self._store.get(session_id)
            if state is not None and state.is_streaming:
                self._store.update(session_id, **IDLE_RUN_FIELDS)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._api.aclose()

    # Read accessors for the rendering layer; unknown ids yield idle defaults.

    def get_session_state(self, session_id: str | None) -> ChatSessionState | None:
        return self._store.get(session_id)

    def get_messages(self, session_id: str | None) -> tuple[Message, ...]:
        state = self._store.get(session_id)
        return state.messages if state else ()

    def get_title(self, session_id: str | None) -> str | None:
        state = self._store.get(session_id)
        return state.title if state else None

    def get_is_streaming(self, session_id: str | None) -> bool:
        state = self._store.get(session_id)
        return bool(state and state.is_streaming)

    def get_is_agent_responding(self, session_id: str | None) -> bool:
        state = self._store.get(session_id)
        return bool(state and state.is_agent_responding)

    def get_is_memory_updating(self, session_id: str | None) -> bool:
        state = self._store.get(session_id)
        return bool(state and state.is_memory_updating)

    def get_current_tool_calls(self, session_id: str | None) -> Mapping[str, ToolCall]:
        state = self._store.get(session_id)
        return state.current_tool_calls if state else {}

    def get_current_reasoning_steps(self, session_id: str | None) -> tuple[ReasoningStep, ...]:
        state = self._store.get(session_id)
        return state.current_reasoning_steps if state else ()

    def get_debug_message(self, session_id: str | None) -> str | None:
        state = self._store.get(session_id)
        return state.debug_message if state else None

    def get_error(self, session_id: str | None) -> str | None:
        state = self._store.get(session_id)
        return state.error if state else None

    async def _pump(self, handle: StreamHandle, run: RunContext, payload: dict[str, Any]) -> None:
        aborted = False
        try:
            async with self._api.stream_chat(payload) as response:
                if response.status_code in AUTH_EXPIRED_STATUSES:
                    logger.warning(
                        "stream.auth_expired session_id=%s status=%s",
                        handle.session_id,
                        response.status_code,
                    )
                    await self._handle_token_expired()
                    return
                if response.is_error:
                    await response.aread()
                    raise StreamHttpError(response.status_code, _short(response.text, limit=280))
                logger.debug("stream.connected session_id=%s handle=%s", handle.session_id, handle.handle_id)
                await self._read_frames(handle, run, response)
        except asyncio.CancelledError:
            aborted = True
            raise
        except StreamHttpError as exc:
            self._record_stream_failure(handle, exc)
        except (httpx.HTTPError, httpx.StreamError) as exc:
            self._record_stream_failure(handle, StreamTransportError(f"{type(exc).__name__}: {exc}"))
        except Exception as exc:  # pragma: no cover
            logger.exception("stream.unexpected_error session_id=%s", handle.session_id)
            self._record_stream_failure(handle, exc)
        finally:
            self._finish_run(handle, run, aborted=aborted)

    async def _read_frames(self, handle: StreamHandle, run: RunContext, response: httpx.Response) -> None:
        async for frame in FrameDecoder(response.aiter_bytes()):
            if handle.token.cancelled:
                return
            try:
                if self._interpreter.apply(run, frame):
                    return
            except ProtocolParseError as exc:
                logger.warning(
                    "stream.frame_skipped session_id=%s reason=%s payload=%s",
                    run.session_id,
                    exc.reason,
                    _short(exc.payload, limit=200),
                )
            except ServerReportedError as exc:
                self._record_server_error(run, exc)
                return
        if handle.token.cancelled:
            return
        # Body ended without [DONE]; that is a clean finish.
        self._store.update(run.session_id, is_streaming=False, is_agent_responding=False)
        run.completed = True
        invoke_callback("on_message_complete", run.callbacks.on_message_complete)

    def _finish_run(self, handle: StreamHandle, run: RunContext, *, aborted: bool) -> None:
        if not self._registry.release(handle):
            # Ended through end_stream or replaced by a newer stream; that path owns the state.
            return
        self._registry.clear_debug_timer(handle.session_id)
        if self._store.get(handle.session_id) is not None:
            self._store.update(handle.session_id, **IDLE_RUN_FIELDS)
        logger.info(
            "stream.finished session_id=%s frames=%s completed=%s aborted=%s",
            handle.session_id,
            run.frames_applied,
            run.completed,
            aborted,
        )

    def _record_server_error(self, run: RunContext, exc: ServerReportedError) -> None:
        text = str(exc)
        logger.warning("stream.server_error session_id=%s error=%s", run.session_id, _short(text, limit=280))
        self._store.update(run.session_id, is_streaming=False, is_agent_responding=False, error=text)
        inject_error_message(self._store, run.session_id, text)

    def _record_stream_failure(self, handle: StreamHandle, exc: Exception) -> None:
        if not self._registry.is_current(handle) or handle.token.cancelled:
            return
        logger.warning("stream.failed session_id=%s error=%s", handle.session_id, exc)
        if self._store.get(handle.session_id) is None:
            return
        self._store.update(handle.session_id, error=str(exc) or STREAM_FAILED)
        inject_error_message(self._store, handle.session_id, STREAM_FAILED)

    def _record_session_failure(self, agent_id: str, exc: Exception) -> None:
        logger.warning("stream.session_create_failed agent_id=%s error=%s", agent_id, exc)
        state = self._store.ensure(None, agent_id)
        self._store.update(state.session_id, error=SESSION_CREATE_FAILED)

    def _record_load_failure(self, session_id: str, exc: Exception) -> None:
        logger.warning("stream.session_load_failed session_id=%s error=%s", session_id, exc)
        self._store.update(session_id, error=LOAD_FAILED, title=LOAD_FAILED_TITLE)

    async def _handle_token_expired(self) -> None:
        if self._on_token_expired is None:
            return
        result = self._on_token_expired()
        if inspect.isawaitable(result):
            await result
