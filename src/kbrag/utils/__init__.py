"""
Utilities: configuration and logging.
"""

from kbrag.utils.logging import get_logger, set_log_level

__all__ = ["get_logger", "set_log_level"]
