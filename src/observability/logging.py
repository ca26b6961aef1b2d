"""Structured logging for the data source layer.

Every component logs through ``structlog.get_logger()`` bound with
``component=<name>``; ``trace_context`` adds a per-fetch ``trace_id``.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TextIO

import structlog

from src.settings import AppSettings, get_settings


def _build_processors(json_format: bool, output: TextIO) -> list[structlog.types.Processor]:
    renderer: structlog.types.Processor
    if json_format:
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=output.isatty())
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]


def configure_logging(
    level: int = logging.INFO,
    output: TextIO = sys.stderr,
    json_format: bool = True,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Minimum level emitted.
        output: Stream receiving log lines.
        json_format: One JSON object per line when True, console output otherwise.
    """
    structlog.configure(
        processors=_build_processors(json_format, output),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=output),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=output, level=level)


def configure_from_settings(
    settings: AppSettings | None = None,
    output: TextIO = sys.stderr,
) -> None:
    """Configure logging from ``DATASOURCES_LOG_LEVEL``/``DATASOURCES_LOG_JSON``."""
    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    configure_logging(level=level, output=output, json_format=settings.log_json)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger, optionally named."""
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger


@contextmanager
def trace_context(trace_id: str | None, **extra: str) -> Iterator[None]:
    """Bind a trace id (and extra keys) to every log line in the block.

    Binding lives in contextvars, so concurrent fetches on the same loop each
    keep their own trace id.
    """
    if trace_id is None and not extra:
        yield
        return
    values = dict(extra)
    if trace_id is not None:
        values["trace_id"] = trace_id
    with structlog.contextvars.bound_contextvars(**values):
        yield
