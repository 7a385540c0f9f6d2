"""Logging setup for engram.

Library modules only ever call ``logging.getLogger(__name__)``; hosting
applications (and the benchmark script) call :func:`configure_logging` once
to attach a handler to the ``engram`` logger tree.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional, TextIO

from ..config.settings import EngineConfig

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s:%(funcName)s:%(lineno)d | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
ROOT_LOGGER = "engram"


def configure_logging(
    level: Optional[str] = None,
    *,
    config: Optional[EngineConfig] = None,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """Attach a single stream handler to the ``engram`` logger.

    The level is taken from ``level``, then ``config.log_level``, then
    ``ENGRAM_LOG_LEVEL`` (``INFO`` when unset). Calling this again replaces
    the previous handler instead of stacking another one.
    """

    if level is None and config is not None:
        level = config.log_level
    resolved = (level or os.environ.get("ENGRAM_LOG_LEVEL", "INFO")).upper()
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        if getattr(handler, "_engram_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler._engram_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.setLevel(resolved)
    logger.propagate = False
    return logger
