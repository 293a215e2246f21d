from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

from loguru import logger

LOG_FORMAT = "{time:YYYY-MM-DDTHH:mm:ss.SSSZ} | {level} | {message}\n{exception}"

# Metadata keys whose values must never reach a sink.
_REDACTED_KEYS = frozenset({"password", "secret", "token", "imap_password_encrypted"})


def configure_logging() -> None:
    """Send worker logs to stdout and, when ``HELPDESK_LOG_PATH`` is set, a rotating file."""

    from helpdesk_sync.core.config import get_settings

    settings = get_settings()
    logger.remove()
    logger.add(sys.stdout, format=LOG_FORMAT, level=settings.log_level, backtrace=False)
    if settings.log_path:
        _add_file_sink(settings.log_path.expanduser(), settings)


def _add_file_sink(path: Path, settings: Any) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(path),
            format=LOG_FORMAT,
            level=settings.log_level,
            rotation=settings.log_rotation,
            retention=settings.log_retention,
            encoding="utf-8",
            enqueue=True,
        )
    except (OSError, ValueError) as exc:
        logger.warning(f"SYNC LOG FILE DISABLED - path={path} error={exc}")


def _scrub(meta: dict[str, Any]) -> dict[str, Any]:
    return {key: ("***" if key in _REDACTED_KEYS else value) for key, value in meta.items()}


def _format_meta(meta: dict[str, Any]) -> str:
    return " ".join(f"{key}={meta[key]}" for key in sorted(meta))


def _emit(level: str, message: str, meta: dict[str, Any]) -> None:
    # depth=2 attributes the record to the caller of the log_* wrapper.
    if not meta:
        logger.opt(depth=2).log(level, message)
        return
    safe = _scrub(meta)
    logger.opt(depth=2).bind(**safe).log(level, f"{message} | {_format_meta(safe)}")


def log_error(message: str, **meta) -> None:
    _emit("ERROR", message, meta)


def log_warning(message: str, **meta) -> None:
    _emit("WARNING", message, meta)


def log_info(message: str, **meta) -> None:
    _emit("INFO", message, meta)


def log_debug(message: str, **meta) -> None:
    _emit("DEBUG", message, meta)
