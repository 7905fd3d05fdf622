"""HTTP infra: chat-session REST collaborators and the streamed chat request, over httpx."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx

from chatstream.core.endpoints import EndpointConfig
from chatstream.core.errors import (
    AuthExpiredError,
    SessionCreationError,
    StreamTransportError,
    UploadError,
)
from chatstream.infra.observability.logger import get_logger
from chatstream.protocol.messages import Attachment

logger = get_logger(__name__)

AUTH_EXPIRED_STATUSES = frozenset({401, 403})
CSRF_COOKIE_NAMES = ("csrftoken", "csrfmiddlewaretoken", "csrf_token")


@dataclass(frozen=True)
class AttachmentFile:
    """One local file to upload before the message is sent."""

    name: str
    content: bytes
    content_type: str = "application/octet-stream"


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return " ".join(response.text.split())[:280]
    if isinstance(body, dict):
        if body.get("detail"):
            return str(body["detail"])
        if body:
            return str(next(iter(body.values())))
    return response.reason_phrase


class ChatApiClient:
    """Async client for session creation, history, uploads, and the chat stream."""

    def __init__(self, config: EndpointConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._config = config
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.timeout_seconds),
            verify=config.verify_tls,
            transport=transport,
        )

    @property
    def config(self) -> EndpointConfig:
        return self._config

    def _headers(self, *, json_body: bool = True) -> dict[str, str]:
        headers: dict[str, str] = {"Accept": "application/json"}
        if json_body:
            headers["Content-Type"] = "application/json"
        csrf = self._config.csrf_token or self._csrf_from_cookies()
        if csrf:
            headers["X-CSRFToken"] = csrf
        if self._config.auth_token:
            headers["Authorization"] = f"Bearer {self._config.auth_token}"
        return headers

    def _csrf_from_cookies(self) -> str | None:
        for name in CSRF_COOKIE_NAMES:
            value = self._client.cookies.get(name)
            if value:
                return value
        return None

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise StreamTransportError(f"{method} {path} failed: {exc}") from exc
        if response.status_code in AUTH_EXPIRED_STATUSES:
            raise AuthExpiredError(response.status_code)
        return response

    async def create_session(self, agent_id: str) -> str:
        try:
            response = await self._request(
                "POST",
                self._config.sessions_path,
                json={"agent_id": agent_id},
                headers=self._headers(),
            )
        except StreamTransportError as exc:
            raise SessionCreationError(str(exc)) from exc
        if response.is_error:
            raise SessionCreationError(
                f"Request failed with status {response.status_code}: {_error_detail(response)}"
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise SessionCreationError("session response is not JSON") from exc
        session_id = body.get("session_id") if isinstance(body, dict) else None
        if not session_id:
            raise SessionCreationError("session response missing session_id")
        logger.info("api.session.created session_id=%s agent_id=%s", session_id, agent_id)
        return str(session_id)

    async def get_session(self, session_id: str) -> dict[str, Any]:
        response = await self._request(
            "GET",
            f"{self._config.sessions_path.rstrip('/')}/{session_id}/",
            headers=self._headers(),
        )
        response.raise_for_status()
        return response.json()

    async def get_session_messages(self, session_id: str) -> list[dict[str, Any]]:
        response = await self._request(
            "GET",
            f"{self._config.sessions_path.rstrip('/')}/{session_id}/messages/",
            headers=self._headers(),
        )
        response.raise_for_status()
        body = response.json()
        results = body.get("results") if isinstance(body, dict) else body
        return [item for item in results or [] if isinstance(item, dict)]

    async def upload_attachments(
        self,
        files: list[AttachmentFile],
        *,
        session_id: str,
        ephemeral: bool = True,
    ) -> list[Attachment]:
        multipart = [("files", (item.name, item.content, item.content_type)) for item in files]
        data = {"session_id": session_id, "is_ephemeral": str(ephemeral).lower()}
        try:
            response = await self._request(
                "POST",
                self._config.files_path,
                files=multipart,
                data=data,
                headers=self._headers(json_body=False),
            )
        except (StreamTransportError, AuthExpiredError) as exc:
            raise UploadError(str(exc)) from exc
        if response.is_error:
            raise UploadError(f"upload failed with status {response.status_code}: {_error_detail(response)}")
        try:
            body = response.json()
        except ValueError as exc:
            raise UploadError("upload response is not JSON") from exc
        documents = body.get("documents") if isinstance(body, dict) else None
        if not isinstance(documents, list):
            return []
        return [
            Attachment(
                id=str(doc.get("uuid") or doc.get("id") or ""),
                name=str(doc.get("title") or doc.get("name") or ""),
                content_type=doc.get("file_type"),
                url=doc.get("file"),
            )
            for doc in documents
            if isinstance(doc, dict)
        ]

    @asynccontextmanager
    async def stream_chat(self, payload: dict[str, Any]) -> AsyncIterator[httpx.Response]:
        """Open the streamed chat POST; the body is read by the caller."""
        headers = self._headers()
        headers["Accept"] = "text/event-stream"
        timeout = httpx.Timeout(
            self._config.timeout_seconds,
            read=self._config.stream_read_timeout_seconds,
        )
        async with self._client.stream(
            "POST",
            self._config.stream_path,
            json=payload,
            headers=headers,
            timeout=timeout,
        ) as response:
            yield response

    async def aclose(self) -> None:
        await self._client.aclose()
