"""
Centralized logging configuration for SmartScribe server.

Provides:
- Structured JSON output for the rotating log file
- Human-readable console output
- Service tagging for filtering
- Masking of bearer tokens before anything is written
"""

import json
import logging
import logging.handlers
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

# Attributes every LogRecord carries; anything else was passed via extra=
_RESERVED_ATTRS = frozenset(
    {
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
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "service",
        "message",
    }
)


class StructuredFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "main"),
            "logger": record.name,
            "line": record.lineno,
            "message": record.getMessage(),
        }

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                entry[key] = value

        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    def __init__(self):
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(service)-13s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "service"):
            record.service = "main"
        return super().format(record)


class ServiceFilter(logging.Filter):
    """Stamp a service name on records that do not carry one yet."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "service"):
            record.service = self.service_name
        return True


# Bearer credentials and bare JWTs never reach a log file
_SECRET_PATTERNS = (
    re.compile(r"(Bearer\s+)[A-Za-z0-9\-_.=]+", re.IGNORECASE),
    re.compile(r"eyJ[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+"),
)


def redact_secrets(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        if pattern.groups:
            text = pattern.sub(r"\1[redacted]", text)
        else:
            text = pattern.sub("[redacted]", text)
    return text


class SecretRedactionFilter(logging.Filter):
    """Rewrite the rendered message with tokens masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


_logging_configured = False
_loggers: Dict[str, logging.Logger] = {}


def setup_logging(
    config: Optional[Dict[str, Any]] = None,
    log_dir: Optional[Path] = None,
) -> logging.Logger:
    """
    Initialize logging for all server components.

    Args:
        config: Logging configuration dict (or a full config dict with a
            "logging" section) with keys:
            - level: Log level (default: INFO)
            - directory: Log directory path
            - max_size_mb: Max log file size before rotation (default: 10)
            - backup_count: Number of rotated files to keep (default: 5)
            - structured: JSON lines in the log file (default: True)
            - console_output: Also log to console (default: True)
        log_dir: Override log directory

    Returns:
        Root logger instance
    """
    global _logging_configured

    root_logger = logging.getLogger()
    if _logging_configured:
        return root_logger

    resolved: Dict[str, Any] = {
        "level": "INFO",
        "directory": "data/logs",
        "max_size_mb": 10,
        "backup_count": 5,
        "structured": True,
        "console_output": True,
    }
    if config:
        resolved.update(config.get("logging", config))

    log_directory = log_dir or Path(resolved["directory"])
    log_directory.mkdir(parents=True, exist_ok=True)
    log_path = log_directory / "smartscribe.log"

    level_name = str(resolved.get("level", "INFO")).upper()
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))
    root_logger.handlers.clear()

    file_handler = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=int(resolved.get("max_size_mb", 10)) * 1_000_000,
        backupCount=int(resolved.get("backup_count", 5)),
        encoding="utf-8",
    )
    if resolved.get("structured", True):
        file_handler.setFormatter(StructuredFormatter())
    else:
        file_handler.setFormatter(HumanReadableFormatter())
    file_handler.addFilter(ServiceFilter("main"))
    file_handler.addFilter(SecretRedactionFilter())
    root_logger.addHandler(file_handler)

    if resolved.get("console_output", True):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(HumanReadableFormatter())
        console_handler.addFilter(ServiceFilter("main"))
        console_handler.addFilter(SecretRedactionFilter())
        root_logger.addHandler(console_handler)

    logging.captureWarnings(True)

    _logging_configured = True
    root_logger.info(
        "Logging initialized",
        extra={"log_path": str(log_path), "level_name": level_name},
    )
    return root_logger


def get_logger(service_name: str) -> logging.Logger:
    """
    Get a logger for a specific service ("api", "backup", "security", ...).

    The service name is added to all log records for filtering.
    """
    if service_name in _loggers:
        return _loggers[service_name]

    logger = logging.getLogger(f"smartscribe.{service_name}")
    logger.addFilter(ServiceFilter(service_name))
    _loggers[service_name] = logger
    return logger
