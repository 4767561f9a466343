"""
Woza Mali Engine - Structured Logging

JSON output for production, colored console output for development.
Every entry carries the fields bound through LogContext, so a submission's
log lines can be joined on record_id and a reconnect cycle's on attempt.

Usage:
    from backend.core.logging import LogContext, configure_structured_logging

    configure_structured_logging(level="INFO", json_output=True)

    with LogContext(record_id=record_id, step="persist_items"):
        logger.info("Persisting line items")
"""

from __future__ import annotations

import json
import logging
import sys
import time
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Generator

from pydantic import BaseModel

# =============================================================================
# Context Variables for Correlation
# =============================================================================

_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})


def get_current_context() -> Dict[str, Any]:
    """Get current logging context."""
    return _log_context.get().copy()


def set_context(**kwargs: Any) -> None:
    """Set context values for current async context."""
    current = _log_context.get().copy()
    current.update(kwargs)
    _log_context.set(current)


def clear_context() -> None:
    """Clear all context values."""
    _log_context.set({})


# =============================================================================
# Sensitive Data Redaction
# =============================================================================

REDACT_PATTERNS = frozenset(
    {
        "password",
        "secret",
        "api_key",
        "apikey",
        "service_role",
        "token",
        "auth",
        "credential",
    }
)


def redact_sensitive(data: Any, max_depth: int = 10) -> Any:
    """Recursively redact sensitive fields from dicts, lists and models."""
    if max_depth <= 0:
        return "[MAX_DEPTH_EXCEEDED]"

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            key_lower = str(key).lower()
            if any(pattern in key_lower for pattern in REDACT_PATTERNS):
                result[key] = "[REDACTED]"
            else:
                result[key] = redact_sensitive(value, max_depth - 1)
        return result

    if isinstance(data, (list, tuple)):
        return [redact_sensitive(item, max_depth - 1) for item in data]

    if isinstance(data, BaseModel):
        return redact_sensitive(data.model_dump(), max_depth - 1)

    return data


# =============================================================================
# JSON Formatter
# =============================================================================

# Extra attributes copied from LogRecord onto the JSON line
EXTRA_KEYS = (
    "record_id",
    "depositor_id",
    "collector_id",
    "step",
    "table",
    "operation",
    "material_id",
    "channel",
    "attempt",
    "status",
    "error_code",
    "duration_ms",
    "count",
)


class StructuredJsonFormatter(logging.Formatter):
    """
    JSON log formatter for production environments.

    Output format:
    {
        "timestamp": "2026-03-07T10:30:00.123456+00:00",
        "level": "INFO",
        "logger": "backend.services.intake_service",
        "message": "Collection settled",
        "record_id": "9b1c...",
        "step": "post_ledger",
        ...
    }
    """

    def __init__(self, include_traceback: bool = True, redact_sensitive_data: bool = True):
        super().__init__()
        self.include_traceback = include_traceback
        self.redact_sensitive_data = redact_sensitive_data

    def format(self, record: logging.LogRecord) -> str:
        log_dict: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        log_dict.update(get_current_context())

        for key in EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_dict[key] = value

        if record.exc_info and self.include_traceback:
            log_dict["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        if self.redact_sensitive_data:
            log_dict = redact_sensitive(log_dict)

        return json.dumps(log_dict, default=str, ensure_ascii=False)


# =============================================================================
# Console Formatter (for development)
# =============================================================================


class ColoredConsoleFormatter(logging.Formatter):
    """Colored console output for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")

        context = get_current_context()
        context_parts = [
            f"{key}={context[key]}"
            for key in ("record_id", "step", "channel", "attempt")
            if key in context
        ]
        context_str = f" [{', '.join(context_parts)}]" if context_parts else ""

        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        line = (
            f"{color}[{timestamp}] {record.levelname:8}{self.RESET} "
            f"{record.name}:{context_str} {record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + "".join(traceback.format_exception(*record.exc_info))
        return line


# =============================================================================
# Split-Stream Handler (stdout for INFO/DEBUG, stderr for WARNING+)
# =============================================================================


class _MaxLevelFilter(logging.Filter):
    """Filter that passes records at or below a maximum level."""

    def __init__(self, max_level: int):
        super().__init__()
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno <= self.max_level


def _create_split_handlers(
    formatter: logging.Formatter,
    level: int = logging.DEBUG,
) -> list[logging.Handler]:
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(level)
    stdout_handler.addFilter(_MaxLevelFilter(logging.INFO))
    stdout_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(max(level, logging.WARNING))
    stderr_handler.setFormatter(formatter)

    return [stdout_handler, stderr_handler]


# =============================================================================
# Logger Configuration
# =============================================================================


def configure_structured_logging(
    level: str = "INFO",
    json_output: bool = True,
    service_name: str = "wozamali",
) -> None:
    """
    Configure root logging.

    Log routing:
    - DEBUG, INFO -> stdout
    - WARNING, ERROR, CRITICAL -> stderr
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter: logging.Formatter
    if json_output:
        formatter = StructuredJsonFormatter()
    else:
        formatter = ColoredConsoleFormatter()

    for handler in _create_split_handlers(formatter, numeric_level):
        root_logger.addHandler(handler)

    set_context(service=service_name)


# =============================================================================
# Context Manager
# =============================================================================


@contextmanager
def LogContext(**kwargs: Any) -> Generator[None, None, None]:
    """
    Context manager for adding fields to all logs within the block.

    Usage:
        with LogContext(record_id=record_id, depositor_id=depositor_id):
            logger.info("Processing")
    """
    token = _log_context.set({**_log_context.get(), **kwargs})
    try:
        yield
    finally:
        _log_context.reset(token)


# =============================================================================
# Timing
# =============================================================================


class Timer:
    """
    Context manager for timing code blocks.

    Usage:
        with Timer() as t:
            await do_something()
        logger.info("Operation took %.1fms", t.elapsed_ms)
    """

    def __init__(self) -> None:
        self.start_time: float = 0
        self.end_time: float = 0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self.end_time = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        end = self.end_time or time.perf_counter()
        return (end - self.start_time) * 1000
