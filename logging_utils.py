"""Lightweight logging helper for console-tagged messages.

Every component logs through log_event() with a short tag (Tracker, Watchdog,
Scenario, ...) so traces from one run can be grepped by subsystem.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

LOG_FORMAT = "[%(levelname)s][%(tag)s] %(message)s"

_logger = logging.getLogger("beatdrift")
if not _logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    _logger.addHandler(handler)
    _logger.setLevel(logging.INFO)

_file_handler: logging.FileHandler | None = None


class _TagAdapter(logging.LoggerAdapter):
    def process(self, msg: Any, kwargs: dict[str, Any]):
        tag = kwargs.pop("tag", "Tracker")
        kwargs.setdefault("extra", {})["tag"] = tag
        return msg, kwargs


_logger_adapter = _TagAdapter(_logger, {})


def _format_field(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.3f}"
    return str(value)


def log_event(level: str, tag: str, message: str, **fields: Any) -> None:
    """Log a message with level+tag, appending key=value fields when provided.
    Fields are only formatted when the level is enabled."""
    level_val = getattr(logging, level.upper(), logging.INFO)
    if not _logger.isEnabledFor(level_val):
        return
    if fields:
        extras = " ".join(f"{k}={_format_field(v)}" for k, v in fields.items())
        message = f"{message} | {extras}"
    _logger_adapter.log(level_val, message, tag=tag)


def set_log_level(level: str) -> None:
    """Set global log level (DEBUG/INFO/WARNING/ERROR)."""
    level_name = (level or "INFO").upper()
    _logger.setLevel(getattr(logging, level_name, logging.INFO))


def get_log_level() -> str:
    """Return current global log level name."""
    return logging.getLevelName(_logger.level)


def log_to_file(path: str | Path | None) -> Path | None:
    """Mirror log output into a file (timestamped lines). None detaches the current file."""
    global _file_handler
    if _file_handler is not None:
        _logger.removeHandler(_file_handler)
        _file_handler.close()
        _file_handler = None
    if path is None:
        return None

    log_path = Path(path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    _file_handler = logging.FileHandler(log_path, encoding="utf-8")
    _file_handler.setFormatter(logging.Formatter("%(asctime)s " + LOG_FORMAT))
    _logger.addHandler(_file_handler)
    return log_path
