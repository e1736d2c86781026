"""Centralized logging setup for the file root server.

Design goals
- Logging must never be required for functionality.
- Logs are split by purpose (core/access) and rotate by size.
- Runtime toggles are driven by env vars.

Environment variables
- FILEROOT_LOG_DIR: directory for log files (default: empty -> stderr only)
- FILEROOT_LOG_CORE_ENABLE: 0/1 (default: 1)
- FILEROOT_LOG_CORE_LEVEL: ERROR|WARNING|INFO|DEBUG (default: INFO)
- FILEROOT_LOG_ACCESS_ENABLE: 0/1 (default: 0)
- FILEROOT_LOG_ROTATE_MAX_MB: max size in MB for each log file before rotation (default: 2)
- FILEROOT_LOG_ROTATE_BACKUPS: number of rotated files to keep (default: 3)

Notes
- Setup is idempotent to avoid duplicating handlers when the app factory
  runs more than once (tests create many apps in one process).
"""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Dict, Optional, Tuple


DEFAULT_CORE_LEVEL = "INFO"
DEFAULT_ROTATE_MAX_MB = 2
DEFAULT_ROTATE_BACKUPS = 3

CORE_LOGGER_NAME = "fileroot"
ACCESS_LOGGER_NAME = "fileroot.access"

_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


_STATE: Dict[str, object] = {
    "configured": False,
    "log_dir": None,
    "handlers": {},  # type: ignore
}


def _env_bool(name: str, default: bool = False) -> bool:
    v = os.environ.get(name)
    if v is None:
        return default
    s = str(v).strip().lower()
    if s in ("1", "true", "yes", "on", "y"):
        return True
    if s in ("0", "false", "no", "off", "n"):
        return False
    return default


def _env_int(name: str, default: int) -> int:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return int(str(v).strip())
    except ValueError:
        return default


def _parse_level(level_name: str) -> int:
    s = (level_name or "").strip().upper()
    if s in ("CRITICAL", "FATAL"):
        return logging.CRITICAL
    if s == "ERROR":
        return logging.ERROR
    if s in ("WARN", "WARNING"):
        return logging.WARNING
    if s == "DEBUG":
        return logging.DEBUG
    # conservative fallback
    return logging.INFO


def get_log_dir(default_dir: Optional[str] = None) -> str:
    """Resolve log directory from env; empty string means stderr only."""
    p = (os.environ.get("FILEROOT_LOG_DIR") or "").strip()
    if p:
        return p
    return default_dir or ""


def _mk_rotating_handler(path: str) -> RotatingFileHandler:
    max_mb = max(1, _env_int("FILEROOT_LOG_ROTATE_MAX_MB", DEFAULT_ROTATE_MAX_MB))
    backups = max(1, _env_int("FILEROOT_LOG_ROTATE_BACKUPS", DEFAULT_ROTATE_BACKUPS))
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    h = RotatingFileHandler(
        path,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backups,
        encoding="utf-8",
        delay=True,
    )
    h.setFormatter(logging.Formatter(_FORMAT))
    return h


def _mk_stream_handler() -> logging.Handler:
    h = logging.StreamHandler(sys.stderr)
    h.setFormatter(logging.Formatter(_FORMAT))
    return h


def setup_logging(log_dir: Optional[str] = None, *, core_level: Optional[str] = None) -> None:
    """Configure core/access loggers.

    With a log directory, each logger writes to its own rotating file
    (``core.log`` / ``access.log``). Without one, both go to stderr.
    """
    if _STATE.get("configured"):
        refresh_runtime_from_env(core_level=core_level)
        return

    log_dir = log_dir if log_dir is not None else get_log_dir()

    handlers: Dict[str, logging.Handler] = {}
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        core_path, access_path = get_paths(log_dir)
        handlers["core"] = _mk_rotating_handler(core_path)
        handlers["access"] = _mk_rotating_handler(access_path)
    else:
        shared = _mk_stream_handler()
        handlers["core"] = shared
        handlers["access"] = shared

    core = logging.getLogger(CORE_LOGGER_NAME)
    core.propagate = False
    core.addHandler(handlers["core"])

    access = logging.getLogger(ACCESS_LOGGER_NAME)
    access.propagate = False
    access.addHandler(handlers["access"])

    _STATE["configured"] = True
    _STATE["log_dir"] = log_dir
    _STATE["handlers"] = handlers

    refresh_runtime_from_env(core_level=core_level)


def core_enabled() -> bool:
    return _env_bool("FILEROOT_LOG_CORE_ENABLE", default=True)


def refresh_runtime_from_env(*, core_level: Optional[str] = None) -> None:
    """Apply runtime settings (levels / rotation params) from env."""
    if not _STATE.get("configured"):
        return

    handlers: Dict[str, logging.Handler] = _STATE.get("handlers") or {}  # type: ignore
    max_mb = max(1, _env_int("FILEROOT_LOG_ROTATE_MAX_MB", DEFAULT_ROTATE_MAX_MB))
    backups = max(1, _env_int("FILEROOT_LOG_ROTATE_BACKUPS", DEFAULT_ROTATE_BACKUPS))
    for h in handlers.values():
        if isinstance(h, RotatingFileHandler):
            h.maxBytes = max_mb * 1024 * 1024
            h.backupCount = backups

    core = logging.getLogger(CORE_LOGGER_NAME)
    core_h = handlers.get("core")
    if not core_enabled():
        core.disabled = True
        if core_h and core_h in core.handlers:
            core.removeHandler(core_h)
        # When disabled, keep level very high to drop everything.
        core.setLevel(100)
    else:
        core.disabled = False
        if core_h and core_h not in core.handlers:
            core.addHandler(core_h)
        lvl_name = core_level or os.environ.get("FILEROOT_LOG_CORE_LEVEL", DEFAULT_CORE_LEVEL)
        core.setLevel(_parse_level(lvl_name))

    # The enable flag decides whether access lines are emitted at all.
    logging.getLogger(ACCESS_LOGGER_NAME).setLevel(logging.INFO)


def access_enabled() -> bool:
    return _env_bool("FILEROOT_LOG_ACCESS_ENABLE", default=False)


def get_paths(log_dir: Optional[str] = None) -> Tuple[str, str]:
    """Return (core_path, access_path)."""
    d = str(log_dir or _STATE.get("log_dir") or get_log_dir() or ".")
    return (
        os.path.join(d, "core.log"),
        os.path.join(d, "access.log"),
    )


def core_logger() -> logging.Logger:
    return logging.getLogger(CORE_LOGGER_NAME)


def access_logger() -> logging.Logger:
    return logging.getLogger(ACCESS_LOGGER_NAME)


def core_log(level: str, msg: str, **extra) -> None:
    """Log ``msg | key=value, ...`` on the core logger. Never raises."""
    try:
        if extra:
            tail = ", ".join(f"{k}={v}" for k, v in extra.items())
            full = f"{msg} | {tail}"
        else:
            full = msg
        fn = getattr(core_logger(), str(level or "info").lower(), None)
        if callable(fn):
            fn(full)
        else:
            core_logger().info(full)
    except Exception:  # noqa: BLE001
        # Logging must never affect the operation being logged.
        pass
