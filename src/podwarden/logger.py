"""Structured logging singleton.

Reads os.environ directly so the logger is usable before pydantic Settings
is constructed (config loading itself logs).

Per-run fields (group folder, container name) are carried in structlog
contextvars via :func:`log_context`. Tasks created inside the block copy the
context, so the stdout/stderr readers and the delivery consumer log with the
same fields as the orchestrator.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

_VERBOSE_LEVELS = ("debug", "trace")


def _level_from_env() -> int:
    name = os.environ.get("LOG_LEVEL", "INFO").upper()
    if name == "TRACE":
        return logging.DEBUG
    return getattr(logging, name, logging.INFO)


def _setup_logging() -> structlog.stdlib.BoundLogger:
    level = _level_from_env()
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)

    shared: list[structlog.types.Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    structlog.configure(
        processors=[*shared, structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("podwarden")


logger = _setup_logging()


def is_verbose() -> bool:
    """True when LOG_LEVEL asks for debug/trace output (full run logs)."""
    return os.environ.get("LOG_LEVEL", "").lower() in _VERBOSE_LEVELS


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind *fields* to every log line emitted inside the block."""
    tokens = structlog.contextvars.bind_contextvars(**fields)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)


def _uncaught_exception_handler(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _uncaught_exception_handler
