"""Observability module for structured logging."""

from src.observability.logging import (
    configure_from_settings,
    configure_logging,
    get_logger,
    trace_context,
)


__all__ = [
    "configure_from_settings",
    "configure_logging",
    "get_logger",
    "trace_context",
]
