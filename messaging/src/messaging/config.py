from __future__ import annotations

import os
from dataclasses import dataclass


DEFAULT_TYPING_TTL_MS = 5_000
DEFAULT_RESUBSCRIBE_ATTEMPTS = 2
DEFAULT_LOG_LEVEL = "INFO"


@dataclass(frozen=True)
class MessagingConfig:
    db_path: str | None = None
    blob_dir: str | None = None
    blob_base_url: str | None = None
    typing_ttl_ms: int = DEFAULT_TYPING_TTL_MS
    resubscribe_attempts: int = DEFAULT_RESUBSCRIBE_ATTEMPTS
    log_level: str = DEFAULT_LOG_LEVEL

    @property
    def durable(self) -> bool:
        return self.db_path is not None


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


def _parse_optional_str(name: str) -> str | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip()


def load_config_from_env() -> MessagingConfig:
    typing_ttl_ms = _parse_non_negative_int("MESSAGING_TYPING_TTL_MS", DEFAULT_TYPING_TTL_MS)
    if typing_ttl_ms == 0:
        raise ValueError("MESSAGING_TYPING_TTL_MS must be positive")
    return MessagingConfig(
        db_path=_parse_optional_str("MESSAGING_DB_PATH"),
        blob_dir=_parse_optional_str("MESSAGING_BLOB_DIR"),
        blob_base_url=_parse_optional_str("MESSAGING_BLOB_BASE_URL"),
        typing_ttl_ms=typing_ttl_ms,
        resubscribe_attempts=_parse_non_negative_int(
            "MESSAGING_RESUBSCRIBE_ATTEMPTS", DEFAULT_RESUBSCRIBE_ATTEMPTS
        ),
        log_level=(_parse_optional_str("MESSAGING_LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper(),
    )
