"""Logging setup shared by the web process and its background tasks.

Every module logs through ``logging.getLogger(__name__)``; since all of them
live below the ``boxoffice`` package, configuring that one logger here is
enough to give the whole service a consistent format.
"""
from __future__ import annotations

import logging
import os

_LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("boxoffice")
    if logger.handlers:
        return logger

    handler = logging.StreamHandler()
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)

    logger.setLevel(_LOG_LEVEL)
    logger.addHandler(handler)
    return logger
