"""Structured logging for xmlagent.

Log lines go to stderr, or to ``logging.file`` when set, so they stay out
of the transcript the CLI renders on stdout.
"""

import logging
import sys
from pathlib import Path
from typing import TextIO

import structlog

from xmlagent.config import get_config

_log_file: TextIO | None = None


def _open_log_file(path: str) -> TextIO:
    global _log_file
    if _log_file is not None and not _log_file.closed:
        _log_file.close()
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    _log_file = open(target, "a", encoding="utf-8", buffering=1)
    return _log_file


def configure_logging(level: str | None = None, log_file: str | None = None) -> None:
    """Configure structlog from the ``logging`` config section.

    Args:
        level: Overrides ``logging.level``
        log_file: Overrides ``logging.file``; empty means stderr
    """
    config = get_config().logging
    log_level = getattr(logging, (level or config.level).upper(), logging.INFO)
    path = log_file if log_file is not None else config.file

    renderer = (
        structlog.dev.ConsoleRenderer(colors=not path)
        if config.format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=_open_log_file(path) if path else sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Logger for a module, usually ``get_logger(__name__)``."""
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


log = get_logger(__name__)
