"""Environment-driven settings for the chat import service."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

_BASE_DIR = Path(__file__).resolve().parents[1]
_DATA_DIR = _BASE_DIR / "data"

DEFAULT_OWNER_ID = "local"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _parse_owner_tokens(raw: str) -> Dict[str, str]:
    """Parse ``token:owner`` pairs separated by commas."""

    tokens: Dict[str, str] = {}
    for chunk in raw.split(","):
        token, sep, owner = chunk.strip().partition(":")
        if not sep or not token.strip() or not owner.strip():
            continue
        tokens[token.strip()] = owner.strip()
    return tokens


@dataclass(frozen=True)
class Settings:
    db_path: Optional[Path]
    media_root: Path
    staging_dir: Path
    preview_ttl_seconds: int
    sweep_interval_seconds: int
    job_retention_seconds: int
    media_memory_limit: int
    max_upload_bytes: int
    owner_tokens: Dict[str, str]

    @property
    def open_access(self) -> bool:
        return not self.owner_tokens


def load_settings() -> Settings:
    db_path = os.getenv("CHAT_IMPORT_DB_PATH", "").strip()
    media_root = os.getenv("CHAT_IMPORT_MEDIA_ROOT", "").strip()
    staging_dir = os.getenv("CHAT_IMPORT_STAGING_DIR", "").strip()
    return Settings(
        db_path=Path(db_path) if db_path else None,
        media_root=Path(media_root) if media_root else _DATA_DIR / "uploads",
        staging_dir=Path(staging_dir) if staging_dir else Path(tempfile.gettempdir()),
        preview_ttl_seconds=_int_env("CHAT_IMPORT_PREVIEW_TTL_SECONDS", 20 * 60),
        sweep_interval_seconds=_int_env("CHAT_IMPORT_SWEEP_INTERVAL_SECONDS", 60),
        job_retention_seconds=_int_env("CHAT_IMPORT_JOB_RETENTION_SECONDS", 60 * 60),
        media_memory_limit=_int_env("CHAT_IMPORT_MEDIA_MEMORY_LIMIT", 64 * 1024 * 1024),
        max_upload_bytes=_int_env("CHAT_IMPORT_MAX_UPLOAD_BYTES", 500 * 1024 * 1024),
        owner_tokens=_parse_owner_tokens(os.getenv("CHAT_IMPORT_OWNER_TOKENS", "")),
    )
