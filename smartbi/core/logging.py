"""
Logging for the dataset layer.

Every module logger lives under the ``smartbi`` namespace and shares one
stdout handler, installed on first use.  The level comes from
``Settings.log_level``.  Thread names are part of the format because field
analysis and cache sweeping run off the request thread.
"""
from __future__ import annotations

import logging
import sys

from smartbi.core.config import get_settings

ROOT_LOGGER = "smartbi"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _configure_root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root.addHandler(handler)
    root.setLevel(getattr(logging, get_settings().log_level.upper(), logging.INFO))
    return root


def get_logger(name: str) -> logging.Logger:
    """Logger for *name* (normally ``__name__``), placed under ``smartbi``."""
    _configure_root()
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
