from __future__ import annotations

import os
from dataclasses import dataclass

ENV_PREFIX = "TASKSHARE"

NOTIFICATION_MODE_BACKGROUND = "background"
NOTIFICATION_MODE_SYNC = "sync"


def _k(suffix: str) -> str:
    return f"{ENV_PREFIX}_{suffix}"


def _env_or_default(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    trimmed = value.strip()
    return trimmed if trimmed else default


def _env_optional(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_float(name: str, default: float) -> float:
    raw = _env_optional(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _parse_csv_env(name: str, default: str = "") -> tuple[str, ...]:
    value = _env_or_default(name, default)
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    state_file: str | None
    cors_allow_origins: tuple[str, ...]
    cors_allow_origin_regex: str
    delivery_url: str | None
    delivery_token: str | None
    delivery_timeout_seconds: float
    notification_mode: str
    log_level: str
    log_file: str | None


def load_settings() -> Settings:
    mode = _env_or_default(_k("NOTIFICATION_MODE"), NOTIFICATION_MODE_BACKGROUND).lower()
    if mode not in (NOTIFICATION_MODE_BACKGROUND, NOTIFICATION_MODE_SYNC):
        mode = NOTIFICATION_MODE_BACKGROUND
    return Settings(
        state_file=_env_optional(_k("STATE_FILE")),
        cors_allow_origins=_parse_csv_env(_k("CORS_ALLOW_ORIGINS"), default="null"),
        cors_allow_origin_regex=_env_or_default(
            _k("CORS_ALLOW_ORIGIN_REGEX"),
            r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        ),
        delivery_url=_env_optional(_k("DELIVERY_URL")),
        delivery_token=_env_optional(_k("DELIVERY_TOKEN")),
        delivery_timeout_seconds=_env_float(_k("DELIVERY_TIMEOUT_SECONDS"), 5.0),
        notification_mode=mode,
        log_level=_env_or_default(_k("LOG_LEVEL"), "INFO").upper(),
        log_file=_env_optional(_k("LOG_FILE")),
    )
