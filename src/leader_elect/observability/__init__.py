"""Observability for leader-elect: structured logging."""

from leader_elect.observability.logging import LogContext, configure_logging

__all__ = [
    "LogContext",
    "configure_logging",
]
