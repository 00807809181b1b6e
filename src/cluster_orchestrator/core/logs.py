"""
Logging setup.

All modules log through structlog.get_logger() and bind the resource address
and action where they have one. configure_logging is called once by the CLI.
Library users that never call it get structlog's defaults.
"""

from __future__ import annotations

import logging
import sys

import structlog


def configure_logging(fmt: str = "auto", level: str = "info") -> None:
    """
    Configure structlog for output to stderr.

    fmt
    console for human readable output, json for log aggregators,
    auto picks console when stderr is a terminal.
    """

    if fmt == "auto":
        fmt = "console" if sys.stderr.isatty() else "json"

    if fmt == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level.upper())),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
