"""Unit tests for settings loading and endpoint-profile aware config resolution."""

from __future__ import annotations

from pathlib import Path

import pytest

from chatstream.core.config import Settings
from chatstream.core.endpoints import resolve_endpoint_config

PROFILES = Path("chatstream/profiles/endpoints.yaml")


def test_endpoint_config_uses_default_profile_values() -> None:
    config = resolve_endpoint_config(Settings(endpoint_profiles_file=PROFILES, endpoint_profile="default"))

    assert config.base_url == "http://localhost:8000"
    assert config.stream_path == "/opie/api/v1/chat/stream/"
    assert config.sessions_path == "/reggie/api/v1/chat-sessions/"
    assert config.timeout_seconds == 30.0
    assert config.stream_read_timeout_seconds == 300.0
    assert config.verify_tls is True


def test_endpoint_config_reads_local_profile() -> None:
    config = resolve_endpoint_config(Settings(endpoint_profiles_file=PROFILES, endpoint_profile="local"))

    assert config.base_url == "http://127.0.0.1:8001"
    assert config.timeout_seconds == 5.0
    assert config.stream_read_timeout_seconds == 60.0
    assert config.verify_tls is False
    assert config.profile_name == "local"


def test_explicit_settings_win_over_profile() -> None:
    config = resolve_endpoint_config(
        Settings(
            api_base_url="https://chat.example.com",
            request_timeout_seconds=12,
            endpoint_profiles_file=PROFILES,
            endpoint_profile="local",
        )
    )

    assert config.base_url == "https://chat.example.com"
    assert config.timeout_seconds == 12.0
    assert config.verify_tls is False


def test_missing_profile_file_falls_back_to_settings(tmp_path: Path) -> None:
    config = resolve_endpoint_config(
        Settings(endpoint_profiles_file=tmp_path / "absent.yaml", request_timeout_seconds=0.1)
    )

    assert config.base_url == "http://localhost:8000"
    assert config.timeout_seconds == 1.0


def test_unknown_profile_name_uses_default_entry(tmp_path: Path) -> None:
    profile_file = tmp_path / "endpoints.yaml"
    profile_file.write_text(
        "profiles:\n"
        "  default:\n"
        "    base_url: http://upstream.internal\n"
        "    paths:\n"
        "      stream: /chat/stream/\n",
        encoding="utf-8",
    )

    config = resolve_endpoint_config(Settings(endpoint_profiles_file=profile_file, endpoint_profile="staging"))

    assert config.base_url == "http://upstream.internal"
    assert config.stream_path == "/chat/stream/"
    assert config.files_path == "/reggie/api/v1/files/"


def test_broken_yaml_is_ignored(tmp_path: Path) -> None:
    profile_file = tmp_path / "endpoints.yaml"
    profile_file.write_text("profiles: [unclosed", encoding="utf-8")

    config = resolve_endpoint_config(Settings(endpoint_profiles_file=profile_file))

    assert config.base_url == "http://localhost:8000"


def test_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CHAT_API_BASE_URL", "https://chat.example.com")
    monkeypatch.setenv("CHAT_VERIFY_TLS", "false")
    monkeypatch.setenv("DEBUG_MESSAGE_TTL_SECONDS", "2.5")
    monkeypatch.setenv("CHAT_ENDPOINT_PROFILE", "local")

    settings = Settings.from_env()

    assert settings.api_base_url == "https://chat.example.com"
    assert settings.verify_tls is False
    assert settings.debug_message_ttl_seconds == 2.5
    assert settings.endpoint_profile == "local"
    assert settings.endpoint_profiles_file.name == "endpoints.yaml"
