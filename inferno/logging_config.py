"""
Structured Logging Configuration

Provides:
- Operation IDs so every line of one tick can be grepped together
- JSON formatting for the rotating log file
- Human-readable console output
"""

import contextvars
import json
import logging
import logging.handlers
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import uuid4


operation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "operation_id", default=None
)
operation_class_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "operation_class", default=None
)


class CorrelationContext:
    """Context manager tagging log records with the current operation."""

    def __init__(
        self,
        operation_class: Optional[str] = None,
        operation_id: Optional[str] = None,
    ):
        self.operation_id = operation_id or uuid4().hex
        self.operation_class = operation_class
        self._tokens = []

    def __enter__(self):
        self._tokens.append((operation_id_var, operation_id_var.set(self.operation_id)))
        if self.operation_class:
            self._tokens.append(
                (operation_class_var, operation_class_var.set(self.operation_class))
            )
        return self

    def __exit__(self, *args):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()


def _timestamp(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": _timestamp(record).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        operation_id = operation_id_var.get()
        operation_class = operation_class_var.get()
        if operation_id:
            log_data["operation_id"] = operation_id
        if operation_class:
            log_data["operation_class"] = operation_class

        log_data.update(self.extra_fields)

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        if hasattr(record, "extra_data"):
            log_data["extra"] = record.extra_data

        return json.dumps(log_data, default=str)


class StructuredFormatter(logging.Formatter):
    """Human-readable structured formatter for console output."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        level = record.levelname
        if self.use_color and sys.stdout.isatty():
            level = f"{self.COLORS.get(level, '')}{level}{self.RESET}"

        parts = [
            f"[{_timestamp(record).strftime('%Y-%m-%d %H:%M:%S')}]",
            f"[{level}]",
            f"[{record.name}]",
            record.getMessage(),
        ]

        context_parts = []
        operation_class = operation_class_var.get()
        operation_id = operation_id_var.get()
        if operation_class:
            context_parts.append(operation_class)
        if operation_id:
            context_parts.append(f"op={operation_id[:8]}")
        if context_parts:
            parts.append(f"[{' '.join(context_parts)}]")

        extra = getattr(record, "extra_data", None)
        if extra:
            parts.append(" ".join(f"{k}={v}" for k, v in extra.items()))

        if record.exc_info:
            parts.append("\n" + "".join(traceback.format_exception(*record.exc_info)))

        return " ".join(parts)


class StructuredLogger:
    """Logger wrapper accepting keyword fields as structured data."""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def _log_with_extra(
        self, level: int, msg: str, extra_data: Optional[Dict[str, Any]] = None, **kwargs
    ):
        if extra_data:
            kwargs.setdefault("extra", {})["extra_data"] = extra_data
        self._logger.log(level, msg, **kwargs)

    def debug(self, msg: str, **extra_data):
        self._log_with_extra(logging.DEBUG, msg, extra_data or None)

    def info(self, msg: str, **extra_data):
        self._log_with_extra(logging.INFO, msg, extra_data or None)

    def warning(self, msg: str, **extra_data):
        self._log_with_extra(logging.WARNING, msg, extra_data or None)

    def error(self, msg: str, exc_info: bool = False, **extra_data):
        self._log_with_extra(logging.ERROR, msg, extra_data or None, exc_info=exc_info)

    def exception(self, msg: str, **extra_data):
        self._log_with_extra(logging.ERROR, msg, extra_data or None, exc_info=True)


def setup_logging(
    log_dir: Union[str, Path] = "logs",
    log_file: str = "inferno.log",
    level: Union[str, int] = logging.INFO,
    json_format: bool = True,
    console_output: bool = True,
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 5,
    extra_fields: Optional[Dict[str, Any]] = None,
) -> logging.Logger:
    """
    Configure structured logging for the application.

    Args:
        log_dir: Directory for log files
        log_file: Name of the log file
        level: Logging level name or number
        json_format: Use JSON formatting for file logs
        console_output: Enable console output
        max_bytes: Max size of log file before rotation
        backup_count: Number of rotated files to keep
        extra_fields: Additional fields to include in every JSON record

    Returns:
        Configured root logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    file_handler = logging.handlers.RotatingFileHandler(
        log_path / log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    if json_format:
        file_handler.setFormatter(JSONFormatter(extra_fields=extra_fields))
    else:
        file_handler.setFormatter(StructuredFormatter(use_color=False))
    root_logger.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(StructuredFormatter(use_color=True))
        root_logger.addHandler(console_handler)

    # Third-party HTTP clients are noisy at DEBUG
    for noisy in ("aiohttp", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for a module."""
    return StructuredLogger(logging.getLogger(name))
