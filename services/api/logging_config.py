"""
Logging setup shared by the API, the engine and the CLI.

Modules ask for a logger with ``get_logger("area")``; everything hangs under
the ``stealth_link`` root so one ``setup_logging()`` call configures it all.
"""
import logging
import os
import sys
from typing import Optional

ROOT_LOGGER = "stealth_link"
LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

_configured = False


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Install a single stream handler on the root project logger.

    Args:
        level: Log level name; defaults to $LOG_LEVEL or INFO

    Returns:
        The configured root project logger
    """
    global _configured

    root = logging.getLogger(ROOT_LOGGER)
    lvl = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    root.setLevel(getattr(logging, lvl, logging.INFO))

    if not _configured:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        _configured = True

    return root


def get_logger(name: str) -> logging.Logger:
    """Return a logger namespaced under the project root, e.g. ``stealth_link.rpc``."""
    if name.startswith(ROOT_LOGGER):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
