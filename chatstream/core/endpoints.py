"""Endpoint config resolver: merge YAML endpoint profiles with env settings."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from chatstream.core.config import Settings


@dataclass(frozen=True)
class EndpointConfig:
    """Normalized upstream endpoint configuration."""

    base_url: str
    stream_path: str
    sessions_path: str
    files_path: str
    timeout_seconds: float
    stream_read_timeout_seconds: float
    auth_token: str = ""
    csrf_token: str = ""
    verify_tls: bool = True
    profile_name: str = "default"


def _load_profile(profile_file: Path, profile_name: str) -> dict[str, Any]:
    candidate = profile_file
    if not candidate.exists() and not candidate.is_absolute():
        project_root = Path(__file__).resolve().parents[2]
        rooted = project_root / candidate
        if rooted.exists():
            candidate = rooted
    if not candidate.exists():
        return {}
    try:
        raw = yaml.safe_load(candidate.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError):
        return {}
    if not isinstance(raw, dict):
        return {}
    profiles = raw.get("profiles")
    if not isinstance(profiles, dict):
        return {}
    payload = profiles.get(profile_name)
    if not isinstance(payload, dict):
        payload = profiles.get("default")
    if not isinstance(payload, dict):
        return {}
    nested = payload.get("paths")
    if isinstance(nested, dict):
        merged = dict(payload)
        merged.update(nested)
        return merged
    return payload


def _pick_str(payload: dict[str, Any], key: str, fallback: str) -> str:
    value = payload.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return fallback


def _pick_float(payload: dict[str, Any], key: str, fallback: float) -> float:
    value = payload.get(key)
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return fallback
    return fallback


def _pick_bool(payload: dict[str, Any], key: str, fallback: bool) -> bool:
    value = payload.get(key)
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return fallback


def _override(explicit: Any, default: Any, profile_value: Any) -> Any:
    return explicit if explicit != default else profile_value


def resolve_endpoint_config(settings: Settings) -> EndpointConfig:
    """Build endpoint config from settings, letting explicit env values win over the profile."""
    profile = _load_profile(settings.endpoint_profiles_file, settings.endpoint_profile)
    defaults = Settings()

    base_url = _override(
        settings.api_base_url,
        defaults.api_base_url,
        _pick_str(profile, "base_url", defaults.api_base_url),
    )
    stream_path = _override(
        settings.chat_stream_path,
        defaults.chat_stream_path,
        _pick_str(profile, "stream", defaults.chat_stream_path),
    )
    sessions_path = _override(
        settings.chat_sessions_path,
        defaults.chat_sessions_path,
        _pick_str(profile, "sessions", defaults.chat_sessions_path),
    )
    files_path = _override(
        settings.files_path,
        defaults.files_path,
        _pick_str(profile, "files", defaults.files_path),
    )
    timeout = _override(
        float(settings.request_timeout_seconds),
        float(defaults.request_timeout_seconds),
        _pick_float(profile, "timeout_seconds", float(defaults.request_timeout_seconds)),
    )
    read_timeout = _override(
        float(settings.stream_read_timeout_seconds),
        float(defaults.stream_read_timeout_seconds),
        _pick_float(
            profile,
            "stream_read_timeout_seconds",
            float(defaults.stream_read_timeout_seconds),
        ),
    )
    verify_tls = _override(
        settings.verify_tls,
        defaults.verify_tls,
        _pick_bool(profile, "verify_tls", defaults.verify_tls),
    )

    return EndpointConfig(
        base_url=base_url,
        stream_path=stream_path,
        sessions_path=sessions_path,
        files_path=files_path,
        timeout_seconds=max(1.0, timeout),
        stream_read_timeout_seconds=max(1.0, read_timeout),
        auth_token=settings.auth_token,
        csrf_token=settings.csrf_token,
        verify_tls=verify_tls,
        profile_name=settings.endpoint_profile,
    )
