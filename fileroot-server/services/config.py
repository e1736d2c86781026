"""Runtime settings, read from environment variables.

Parsing is tolerant: a malformed value falls back to the default instead of
refusing to start.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any, Optional


DEFAULT_ROOT_DIR = "/mnt/test"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000


def _env_str(name: str, default: str = "") -> str:
    v = os.environ.get(name)
    if v is None:
        return default
    return str(v).strip()


def _env_bool(name: str, default: bool = False) -> bool:
    s = _env_str(name).lower()
    if s in ("1", "true", "yes", "on", "y"):
        return True
    if s in ("0", "false", "no", "off", "n"):
        return False
    return default


def _env_int(name: str, default: int = 0) -> int:
    v = _env_str(name)
    if not v:
        return int(default)
    try:
        return int(float(v))
    except ValueError:
        return int(default)


def parse_flag(value: Any, default: bool) -> bool:
    """Interpret a JSON/form/query flag (``true``, ``1``, ``on``...)."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in ("1", "true", "yes", "on", "y"):
        return True
    if s in ("0", "false", "no", "off", "n"):
        return False
    return default


@dataclass(frozen=True)
class Settings:
    root_dir: str = DEFAULT_ROOT_DIR
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    overwrite: bool = True
    max_upload_mb: int = 0
    cors_origin: str = "*"
    static_dir: str = ""
    log_dir: str = ""
    log_level: str = "INFO"

    @property
    def max_upload_bytes(self) -> Optional[int]:
        if self.max_upload_mb > 0:
            return int(self.max_upload_mb) * 1024 * 1024
        return None

    @classmethod
    def from_env(cls) -> "Settings":
        port = _env_int("FILEROOT_PORT", _env_int("PORT", DEFAULT_PORT))
        return cls(
            root_dir=_env_str("FILEROOT_ROOT_DIR", DEFAULT_ROOT_DIR) or DEFAULT_ROOT_DIR,
            host=_env_str("FILEROOT_HOST", DEFAULT_HOST) or DEFAULT_HOST,
            port=port if 0 < port < 65536 else DEFAULT_PORT,
            overwrite=_env_bool("FILEROOT_OVERWRITE", True),
            max_upload_mb=max(0, _env_int("FILEROOT_MAX_UPLOAD_MB", 0)),
            cors_origin=_env_str("FILEROOT_CORS_ORIGIN", "*"),
            static_dir=_env_str("FILEROOT_STATIC_DIR", ""),
            log_dir=_env_str("FILEROOT_LOG_DIR", ""),
            log_level=_env_str("FILEROOT_LOG_CORE_LEVEL", "INFO") or "INFO",
        )

    def with_overrides(self, **overrides: Any) -> "Settings":
        return replace(self, **overrides)
