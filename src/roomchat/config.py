from __future__ import annotations

import os
from dataclasses import dataclass

from .media import MAX_MEDIA_BYTES


@dataclass(frozen=True)
class ChatConfig:
    db_path: str | None = None
    profiles_path: str | None = None
    media_dir: str = "./media"
    media_base_url: str = "/media"
    max_media_bytes: int = MAX_MEDIA_BYTES
    subscriber_buffer: int = 1000
    history_limit: int = 100
    notification_limit: int = 20
    session_ttl_s: int = 3600
    ping_interval_s: int = 30
    log_json: bool = True

    @property
    def session_ttl_ms(self) -> int:
        return max(self.session_ttl_s, 0) * 1000


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_int(name: str, default: int) -> int:
    parsed = _parse_non_negative_int(name, default)
    if parsed == 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_bool01(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    if raw not in {"0", "1"}:
        raise ValueError(f"{name} must be 0 or 1")
    return raw == "1"


def load_config_from_env() -> ChatConfig:
    return ChatConfig(
        db_path=os.environ.get("ROOMCHAT_DB_PATH") or None,
        profiles_path=os.environ.get("ROOMCHAT_PROFILES_PATH") or None,
        media_dir=os.environ.get("ROOMCHAT_MEDIA_DIR") or "./media",
        media_base_url=os.environ.get("ROOMCHAT_MEDIA_BASE_URL") or "/media",
        max_media_bytes=_parse_positive_int("ROOMCHAT_MAX_MEDIA_BYTES", MAX_MEDIA_BYTES),
        subscriber_buffer=_parse_positive_int("ROOMCHAT_SUBSCRIBER_BUFFER", 1000),
        history_limit=_parse_positive_int("ROOMCHAT_HISTORY_LIMIT", 100),
        notification_limit=_parse_positive_int("ROOMCHAT_NOTIFICATION_LIMIT", 20),
        session_ttl_s=_parse_positive_int("ROOMCHAT_SESSION_TTL_S", 3600),
        ping_interval_s=_parse_positive_int("ROOMCHAT_PING_INTERVAL_S", 30),
        log_json=_parse_bool01("ROOMCHAT_LOG_JSON", True),
    )
