"""
Logging utilities.

Every module logs through ``logging.getLogger(__name__)``; the records
propagate to the ``kbrag`` logger, which owns the only handler.
"""

import logging
import sys

ROOT_LOGGER = "kbrag"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _ensure_handler(root: logging.Logger) -> None:
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        root.setLevel(logging.INFO)


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """
    Get a logger in the kbrag tree.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger whose records reach the package handler
    """
    _ensure_handler(logging.getLogger(ROOT_LOGGER))
    return logging.getLogger(name)


def set_log_level(level: int | str) -> None:
    """
    Set the log level of the kbrag logger tree.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Raises:
        ValueError: If the level name is unknown
    """
    if isinstance(level, str):
        value = logging.getLevelName(level.upper())
        if not isinstance(value, int):
            raise ValueError(f"Unknown log level: {level}")
        level = value

    get_logger().setLevel(level)
