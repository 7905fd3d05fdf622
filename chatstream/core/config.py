"""Configuration layer: load runtime settings from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _resolve_path(path_like: str) -> Path:
    candidate = Path(path_like)
    if candidate.is_absolute():
        return candidate
    if candidate.exists():
        return candidate
    project_root = Path(__file__).resolve().parents[2]
    rooted = project_root / candidate
    if rooted.exists():
        return rooted
    return candidate


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Immutable settings shared by the stream engine and the bridge API."""

    app_name: str = "chatstream bridge"
    app_version: str = "0.1.0"
    env: str = "dev"
    log_level: str = "INFO"
    cors_allow_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
    api_base_url: str = "http://localhost:8000"
    chat_stream_path: str = "/opie/api/v1/chat/stream/"
    chat_sessions_path: str = "/reggie/api/v1/chat-sessions/"
    files_path: str = "/reggie/api/v1/files/"
    request_timeout_seconds: float = 30.0
    stream_read_timeout_seconds: float = 300.0
    auth_token: str = ""
    csrf_token: str = ""
    verify_tls: bool = True
    debug_message_ttl_seconds: float = 5.0
    sse_keepalive_seconds: float = 1.0
    sse_max_wait_seconds: int = 20
    endpoint_profiles_file: Path = Path("chatstream/profiles/endpoints.yaml")
    endpoint_profile: str = "default"

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from process env with deterministic defaults."""
        return cls(
            app_name=os.getenv("APP_NAME", cls.app_name),
            app_version=os.getenv("APP_VERSION", cls.app_version),
            env=os.getenv("APP_ENV", cls.env),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
            cors_allow_origins=os.getenv("CORS_ALLOW_ORIGINS", cls.cors_allow_origins),
            api_base_url=os.getenv("CHAT_API_BASE_URL", cls.api_base_url),
            chat_stream_path=os.getenv("CHAT_STREAM_PATH", cls.chat_stream_path),
            chat_sessions_path=os.getenv("CHAT_SESSIONS_PATH", cls.chat_sessions_path),
            files_path=os.getenv("CHAT_FILES_PATH", cls.files_path),
            request_timeout_seconds=float(
                os.getenv("CHAT_REQUEST_TIMEOUT_SECONDS", str(cls.request_timeout_seconds))
            ),
            stream_read_timeout_seconds=float(
                os.getenv(
                    "CHAT_STREAM_READ_TIMEOUT_SECONDS",
                    str(cls.stream_read_timeout_seconds),
                )
            ),
            auth_token=os.getenv("CHAT_AUTH_TOKEN", cls.auth_token),
            csrf_token=os.getenv("CHAT_CSRF_TOKEN", cls.csrf_token),
            verify_tls=_env_bool("CHAT_VERIFY_TLS", cls.verify_tls),
            debug_message_ttl_seconds=float(
                os.getenv("DEBUG_MESSAGE_TTL_SECONDS", str(cls.debug_message_ttl_seconds))
            ),
            sse_keepalive_seconds=float(
                os.getenv("SSE_KEEPALIVE_SECONDS", str(cls.sse_keepalive_seconds))
            ),
            sse_max_wait_seconds=int(
                os.getenv("SSE_MAX_WAIT_SECONDS", str(cls.sse_max_wait_seconds))
            ),
            endpoint_profiles_file=_resolve_path(
                os.getenv("CHAT_ENDPOINT_PROFILES_FILE", str(cls.endpoint_profiles_file))
            ),
            endpoint_profile=os.getenv("CHAT_ENDPOINT_PROFILE", cls.endpoint_profile),
        )
