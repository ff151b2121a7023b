"""Logging setup for the task runner."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "gsdrun"


def setup_logging(level: str = "INFO", *, console: Console | None = None) -> logging.Logger:
    """Attach a rich handler to the package logger and return it.

    Calling it again replaces the handler instead of stacking a second one.
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"unknown log level: {level}")
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(numeric)
    logger.handlers = []
    handler = RichHandler(
        console=console or Console(stderr=True),
        rich_tracebacks=True,
        show_time=False,
        show_path=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
    return logger
