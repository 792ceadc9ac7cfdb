"""
utils/logger.py
Simple logging wrapper for lanwatch
"""

import logging
import sys
from typing import Union


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name, ``lanwatch.<component>`` by convention
        level: Logging level (default: INFO)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Children propagate to the root "lanwatch" logger
    if name.startswith("lanwatch."):
        return logger

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.DEBUG)

    # Format: LEVEL - name - message
    formatter = logging.Formatter(
        '%(levelname)s - %(name)s - %(message)s',
        datefmt='%H:%M:%S'
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    return logger


def set_level(level: Union[int, str]) -> None:
    """Change the level of the root lanwatch logger (and so every child)."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    log.setLevel(level)
    # APScheduler logs every job execution at INFO
    logging.getLogger("apscheduler").setLevel(max(level, logging.WARNING))


# Default logger instance
log = get_logger("lanwatch")


__all__ = ["get_logger", "set_level", "log"]
