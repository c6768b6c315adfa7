"""
Centralized logging configuration.

Provides structured logging with console and rotating file outputs.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any

from envcontroller.constants import (
    EXCLUDED_EXTRA_FIELDS,
    JSON_DATEFMT,
    LOG_BACKUP_COUNT,
    LOG_MAX_BYTES,
    QUIET_LOGGERS,
    RESERVED_ATTRS,
    STRUCT_CONSOLE_FMT,
    STRUCT_DATEFMT,
    STRUCT_FILE_FMT,
    TEXT_CONSOLE_FMT,
    TEXT_DATEFMT,
    TEXT_FILE_FMT,
)
from envcontroller.context import get_operation_id

LOG_FORMATS = ("text", "structured", "json")


class BaseFormatter(logging.Formatter):
    """
    Base formatter that handles operation_id injection and extra field extraction.

    All other formatters inherit from this to get consistent behaviour.
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Inject operation_id and extract extra fields before formatting.

        Args:
            record: LogRecord to format

        Returns:
            Formatted log string
        """
        operation_id = get_operation_id()
        record.operation_id = operation_id if operation_id else "--------"

        record.extra_fields = self._extract_extra_fields(record)

        return super().format(record)

    def _extract_extra_fields(self, record: logging.LogRecord) -> dict[str, Any]:
        """
        Extract custom fields from LogRecord that were passed via extra={}.

        Args:
            record: LogRecord to extract from

        Returns:
            Dictionary of extra fields
        """
        return {
            key: value
            for key, value in record.__dict__.items()
            if key not in RESERVED_ATTRS
            and key not in EXCLUDED_EXTRA_FIELDS
            and not key.startswith("_")
        }


class TextFormatter(BaseFormatter):
    """
    Simple text formatter.
    Does not show extra fields.
    """

    pass


class StructuredFormatter(BaseFormatter):
    """
    Human-readable formatter that appends extra fields as key=value pairs.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format with extra fields appended as key=value pairs."""
        base_message = super().format(record)

        if record.extra_fields:
            extra_str = " | " + " ".join(
                f"{key}={value}" for key, value in record.extra_fields.items()
            )
            return base_message + extra_str

        return base_message


class JSONFormatter(BaseFormatter):
    """
    JSON formatter for log shippers.

    Values that are not JSON serializable (datetimes, enums) are rendered with str().
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format as JSON with all fields."""
        super().format(record)

        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "operation_id": record.operation_id,
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }

        log_data.update(record.extra_fields)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    log_file: str | None = None,
    log_format: str = "text",
) -> None:
    """
    Configure application-wide logging.

    Should be called once at application startup (in main.py).
    Configures the root logger, which all module loggers inherit from.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for log output (rotated at LOG_MAX_BYTES)
        log_format: Format type (text, structured, or json)

    Raises:
        ValueError: If level or log_format is unknown
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        raise ValueError(f"Unknown log level: {level}")

    if log_format not in LOG_FORMATS:
        raise ValueError(f"Unknown log format: {log_format}")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    if log_format == "json":
        console_formatter = JSONFormatter(datefmt=JSON_DATEFMT)
        file_formatter = JSONFormatter(datefmt=JSON_DATEFMT)
    elif log_format == "structured":
        console_formatter = StructuredFormatter(fmt=STRUCT_CONSOLE_FMT, datefmt=STRUCT_DATEFMT)
        file_formatter = StructuredFormatter(fmt=STRUCT_FILE_FMT, datefmt=STRUCT_DATEFMT)
    else:
        console_formatter = TextFormatter(fmt=TEXT_CONSOLE_FMT)
        file_formatter = TextFormatter(fmt=TEXT_FILE_FMT, datefmt=TEXT_DATEFMT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT
        )
        file_handler.setLevel(logging.DEBUG)  # Always DEBUG for files
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a module.

    Call this at module level: logger = get_logger(__name__)
    """
    return logging.getLogger(name)
