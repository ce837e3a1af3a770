"""
Logging for the crowdstats package.

Everything logs under the "crowdstats" logger; setup_logging attaches one
stdout handler there and leaves the root logger to the host application.
"""

import logging
import sys
from typing import Optional, Union

from crowdstats.core.constants import LOG_LEVEL

ROOT_LOGGER = "crowdstats"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-32s | %(message)s"

_initialized = False


def setup_logging(level: Optional[Union[int, str]] = None) -> logging.Logger:
    """
    Configure the package logger once; later calls return it unchanged.
    level defaults to CROWDSTATS_LOG_LEVEL.
    """
    global _initialized

    logger = logging.getLogger(ROOT_LOGGER)
    if _initialized:
        return logger

    level = level if level is not None else LOG_LEVEL
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level)

    # Remote round trips are logged here already
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    _initialized = True
    return logger


def get_logger(name: str) -> logging.Logger:
    """Logger for a module, under the package logger."""
    setup_logging()
    if name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
