"""
tablerpc logging.

Two outputs for one logger tree rooted at ``tablerpc``:
- Console: short human-readable lines (respects NO_COLOR)
- File: ``<log_dir>/tablerpc.log`` in JSON Lines, one object per record,
  with component, message and any structured ``context``

Components tag where a record came from: API (dispatcher and HTTP surface),
DB (sessions and data access), MIGRATE (planner and runner), CLIENT
(transports).
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

DEFAULT_COMPONENT = "TABLERPC"

# =============================================================================
# Terminal Colors (respects NO_COLOR)
# =============================================================================

_USE_COLOR = not os.environ.get("NO_COLOR") and sys.stdout.isatty()

_RESET = "\033[0m"
_DIM = "\033[2m"

# Keyed by level name or component name
_PALETTE: dict[str, str] = {
    "DEBUG": "\033[36m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
    "API": "\033[34m",
    "DB": "\033[36m",
    "MIGRATE": "\033[35m",
    "CLIENT": "\033[33m",
}


def _paint(text: str, key: str) -> str:
    if not _USE_COLOR or key not in _PALETTE:
        return text
    return f"{_PALETTE[key]}{text}{_RESET}"


def _component(record: logging.LogRecord) -> str:
    return getattr(record, "component", DEFAULT_COMPONENT)


# =============================================================================
# Formatters
# =============================================================================


class JSONLFormatter(logging.Formatter):
    """
    One JSON object per record.

    {"timestamp":"2026-01-15T10:30:45.123456Z","level":"INFO","component":"API","message":"recipe.generate ok","context":{"duration_ms":4.2}}

    Records at WARNING and above also carry their source location.
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, UTC)
        entry: dict[str, Any] = {
            "timestamp": created.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "component": _component(record),
            "message": record.getMessage(),
        }
        if context := getattr(record, "context", None):
            entry["context"] = context
        if record.levelno >= logging.WARNING:
            entry["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }
        if record.exc_info and record.exc_info[1] is not None:
            error = record.exc_info[1]
            entry["exception"] = {"type": type(error).__name__, "message": str(error)}
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """``HH:MM:SS [COMPONENT] LEVEL: message``, level omitted for INFO."""

    def format(self, record: logging.LogRecord) -> str:
        component = _component(record)
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        parts = [
            f"{_DIM}{clock}{_RESET}" if _USE_COLOR else f"[{clock}]",
            _paint(f"[{component}]", component),
        ]
        if record.levelno != logging.INFO:
            parts.append(_paint(record.levelname, record.levelname) + ":")
        parts.append(record.getMessage())

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# =============================================================================
# Logger Setup
# =============================================================================


_loggers: dict[str, logging.Logger] = {}
_log_dir: Path | None = None

LOG_FILE_NAME = "tablerpc.log"


def setup_logging(
    log_dir: Path | str | None = ".tablerpc/logs",
    level: int | str = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
) -> Path | None:
    """
    Initialize console and (optionally) JSONL file logging.

    Args:
        log_dir: Directory for tablerpc.log; None disables the file handler
        level: Minimum log level (name or number)
        max_bytes: Max size per log file before rotation
        backup_count: Number of rotated files to keep

    Returns:
        The log directory, or None when file logging is off
    """
    global _log_dir

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root_logger = logging.getLogger("tablerpc")
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ConsoleFormatter())
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)

    if log_dir is None:
        _log_dir = None
        return None

    _log_dir = Path(log_dir)
    _log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        _log_dir / LOG_FILE_NAME,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(JSONLFormatter())
    file_handler.setLevel(level)
    root_logger.addHandler(file_handler)

    return _log_dir


class _ComponentFilter(logging.Filter):
    def __init__(self, component: str):
        super().__init__()
        self.component = component

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "component"):
            record.component = self.component
        return True


def get_logger(component: str) -> logging.Logger:
    """
    Get a logger for a component (API, DB, MIGRATE, CLIENT).

    Records carry the component name so both formatters can show it.
    """
    if component in _loggers:
        return _loggers[component]

    logger = logging.getLogger(f"tablerpc.{component.lower().replace(' ', '_')}")
    logger.addFilter(_ComponentFilter(component))
    _loggers[component] = logger
    return logger


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    context: dict[str, Any] | None = None,
    **kwargs: Any,
) -> None:
    """Log a message with structured context data (written to the JSONL file)."""
    extra = {"context": {**(context or {}), **kwargs}} if (context or kwargs) else {}
    logger.log(level, message, extra=extra)


def get_log_file() -> Path | None:
    """Get the path to the main log file."""
    if _log_dir:
        return _log_dir / LOG_FILE_NAME
    return None
