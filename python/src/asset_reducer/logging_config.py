"""Logging setup for the command line and worker entry points."""

from __future__ import annotations

import logging
import os
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "asset_reducer"


def init_logging(
    level: Optional[Union[int, str]] = None,
    console: Optional[Console] = None,
) -> logging.Logger:
    """Attach a rich handler to the package logger.

    The level defaults to ``ASSET_REDUCER_LOG_LEVEL`` (then INFO). Calling this
    again replaces the previous handler instead of stacking a second one.
    """
    if level is None:
        level = os.getenv("ASSET_REDUCER_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        level = resolved if isinstance(resolved, int) else logging.INFO

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    if logger.hasHandlers():
        logger.handlers.clear()

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    logger.addHandler(handler)
    logger.propagate = False
    return logger
