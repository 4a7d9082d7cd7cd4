"""
Logging setup.

Everything logs to stderr through the ``lore`` package logger so callers
that speak over stdout are never disturbed.
"""

import logging
import os
import sys

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def get_logger(name: str) -> logging.Logger:
    """Return a child of the ``lore`` logger, configuring the root once."""
    root = logging.getLogger("lore")
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
        handler.setFormatter(formatter)
        root.addHandler(handler)
        root.setLevel(os.environ.get("LORE_LOG_LEVEL", "INFO").upper())
    if name == "lore" or name.startswith("lore."):
        return logging.getLogger(name)
    return logging.getLogger(f"lore.{name}")
