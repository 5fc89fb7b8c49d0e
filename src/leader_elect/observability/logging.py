"""Structured logging for leader-elect.

Provides:
- JSON-formatted logs for log aggregation systems (journald, Loki, etc.)
- A human-readable console format for interactive use
- Election identifier and instance token attached to every record

Usage:
    from leader_elect.observability.logging import LogContext, configure_logging

    configure_logging(json_format=True, level="INFO")

    with LogContext(election="web", instance="host-1"):
        logger.info("Acquired lock")  # Includes election and instance
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Context variables for election correlation
election_var: contextvars.ContextVar[str] = contextvars.ContextVar("election", default="")
instance_var: contextvars.ContextVar[str] = contextvars.ContextVar("instance", default="")

_CONTEXT_VARS: dict[str, contextvars.ContextVar[str]] = {
    "election": election_var,
    "instance": instance_var,
}


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Output format:
    {"timestamp": "2026-01-10T12:34:56.789+00:00", "level": "INFO",
     "logger": "leader_elect.lock", "message": "Acquired lock ...",
     "election": "web", "instance": "host-1"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, var in _CONTEXT_VARS.items():
            value = var.get()
            if value:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter.

    Output format:
    2026-01-10 12:34:56 | INFO     | leader_elect.lock | Acquired lock | web@host-1
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True) -> None:
        super().__init__(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s%(election_context)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        election = election_var.get()
        instance = instance_var.get()
        if election and instance:
            record.election_context = f" | {election}@{instance}"
        elif election:
            record.election_context = f" | {election}"
        else:
            record.election_context = ""

        line = super().format(record)
        color = self.COLORS.get(record.levelname) if self.use_colors else None
        return f"{color}{line}{self.RESET}" if color else line


def configure_logging(
    json_format: bool = False,
    level: str = "INFO",
    use_colors: bool = True,
) -> None:
    """Configure process-wide logging.

    Args:
        json_format: Use JSON format (recommended under a log collector)
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_colors: Use ANSI colors in console format
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)

    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(ConsoleFormatter(use_colors=use_colors))

    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


class LogContext:
    """Context manager for adding election context to logs.

    Usage:
        with LogContext(election="web", instance="host-1"):
            logger.info("Starting")  # Includes election and instance
    """

    def __init__(self, **kwargs: str) -> None:
        self.extra = kwargs
        self._tokens: dict[str, contextvars.Token[str]] = {}

    def __enter__(self) -> "LogContext":
        for key, value in self.extra.items():
            var = _CONTEXT_VARS.get(key)
            if var is not None:
                self._tokens[key] = var.set(value)
        return self

    def __exit__(self, *args: Any) -> None:
        for key, token in self._tokens.items():
            _CONTEXT_VARS[key].reset(token)
        self._tokens.clear()
