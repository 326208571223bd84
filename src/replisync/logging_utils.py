"""Logging helpers.

Library modules log through ``logging.getLogger(__name__)``. The engine also
accepts an optional log sink, a plain callable receiving progress messages;
``emit`` writes to both.
"""

from __future__ import annotations

import logging
import sys
from typing import Callable

LogSink = Callable[[str], None]

DEFAULT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def emit(
    logger: logging.Logger,
    sink: LogSink | None,
    message: str,
    level: int = logging.INFO,
) -> None:
    """Log ``message`` and forward it to ``sink`` if one is set.

    The sink is best effort: an exception it raises is logged and dropped.
    """
    logger.log(level, message)
    if sink is None:
        return
    try:
        sink(message)
    except Exception:
        logger.warning("Log sink raised while handling: %s", message, exc_info=True)


def configure_logging(level: str | int = "INFO", fmt: str = DEFAULT_FORMAT) -> None:
    """Send ``replisync`` logs to stderr at ``level``."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    package_logger = logging.getLogger("replisync")
    package_logger.setLevel(level)
    for handler in package_logger.handlers:
        if getattr(handler, "_replisync", False):
            # sys.stderr may have been swapped since the last call
            handler.setStream(sys.stderr)
            handler.setFormatter(logging.Formatter(fmt))
            return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(fmt))
    handler._replisync = True  # type: ignore[attr-defined]
    package_logger.addHandler(handler)
