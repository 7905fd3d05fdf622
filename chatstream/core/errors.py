"""Error taxonomy for session setup, transport, and protocol failures."""

from __future__ import annotations


class ChatStreamError(Exception):
    """Base class for every failure raised inside the stream engine."""


class SessionCreationError(ChatStreamError):
    """No session id could be obtained before streaming."""


class UploadError(ChatStreamError):
    """Attachment upload failed; the message is still sent."""


class AuthExpiredError(ChatStreamError):
    """Upstream answered 401/403; token refresh takes over."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"authentication expired (status {status_code})")
        self.status_code = status_code


class StreamHttpError(ChatStreamError):
    """Non-2xx, non-auth status on the stream request."""

    def __init__(self, status_code: int, detail: str = "") -> None:
        message = f"Server responded with status: {status_code}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class StreamTransportError(ChatStreamError):
    """Network failure or abrupt disconnect while reading the stream."""


class ProtocolParseError(ChatStreamError):
    """A frame could not be decoded; always recovered by skipping it."""

    def __init__(self, payload: str, reason: str) -> None:
        super().__init__(f"invalid frame: {reason}")
        self.payload = payload
        self.reason = reason


class ServerReportedError(ChatStreamError):
    """The payload explicitly carried an `error` field."""
