"""
Centralized logging configuration for bootfix.

Supports traditional text logging and structured JSON logging. Structured records
carry the id of the repair session that produced them, taken from a context var
that the executor sets while a session runs.

Usage:
    from bootfix.logging_config import configure_logging, session_id_var

    configure_logging(log_dir=Path("logs"))
    session_id_var.set("session-1a2b3c")

Defaults for the level and directory come from ``Settings.log_level`` and
``Settings.log_dir`` (``BOOTFIX_LOG_LEVEL`` / ``BOOTFIX_LOG_DIR``).
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Optional

from .config import Settings, settings

session_id_var: ContextVar[Optional[str]] = ContextVar("session_id", default=None)

_STANDARD_ATTRS = {
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "exc_info",
    "exc_text",
    "stack_info",
    "message",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter that tags each record with the active session id."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "session_id": session_id_var.get(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def get_default_log_dir(workspace: Optional[Path] = None, config: Optional[Settings] = None) -> Path:
    """Return the log directory, honouring ``Settings.log_dir``."""
    config = config or settings
    if config.log_dir:
        return Path(config.log_dir)
    if workspace is None:
        workspace = Path.cwd()
    return workspace / ".bootfix" / "logs"


def configure_logging(
    session_id: Optional[str] = None,
    workspace: Optional[Path] = None,
    log_dir: Optional[Path] = None,
    log_level: Optional[str] = None,
    log_to_console: bool = True,
    log_to_file: bool = True,
    log_filename: Optional[str] = None,
    structured: bool = False,
    config: Optional[Settings] = None,
) -> logging.Logger:
    """
    Configure the ``bootfix`` logger hierarchy.

    Args:
        session_id: Used in the log filename when ``log_filename`` is not given
        workspace: Base directory for the default log dir (defaults to cwd)
        log_dir: Log directory (overrides ``Settings.log_dir``)
        log_level: Log level (overrides ``Settings.log_level``)
        log_to_console: Whether to log to console
        log_to_file: Whether to log to file
        log_filename: Custom log filename
        structured: Emit JSON lines instead of plain text
        config: Settings to take defaults from (defaults to the module-level ``settings``)

    Returns:
        Configured logger instance
    """
    config = config or settings
    logger = logging.getLogger("bootfix")
    logger.handlers.clear()

    if log_level is None:
        log_level = config.log_level
    logger.setLevel(getattr(logging, log_level.upper()))

    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_to_file:
        if log_dir is None:
            log_dir = get_default_log_dir(workspace, config)
        log_dir.mkdir(parents=True, exist_ok=True)

        if log_filename is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            prefix = session_id or "bootfix"
            log_filename = f"{prefix}_{timestamp}.log"

        log_path = log_dir / log_filename
        file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

        logger.info(f"Logging to: {log_path}")

    return logger
