"""
Package logging for the engagement engine.

All modules log under the "engagement" hierarchy through get_logger(name).
One stdout handler is attached to the package logger; the level starts
from LOG_LEVEL and is replaced by the config value when the app starts.
"""
import logging
import os
import sys

PACKAGE_LOGGER = "engagement"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _configure(level: str) -> logging.Logger:
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    if not package_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
        package_logger.addHandler(handler)
    # Engine records stay out of the root logger's handlers
    package_logger.propagate = False
    _apply_level(package_logger, level)
    return package_logger


def _apply_level(package_logger: logging.Logger, level: str) -> None:
    level = level.upper()
    package_logger.setLevel(level)
    for handler in package_logger.handlers:
        handler.setLevel(level)


logger = _configure(os.getenv("LOG_LEVEL", "INFO"))


def set_level(level: str) -> None:
    """Change the package log level at runtime."""
    _apply_level(logger, level)


def get_logger(name: str = None) -> logging.Logger:
    """Child logger "engagement.<name>", or the package logger when name is empty."""
    if name:
        return logger.getChild(name)
    return logger
