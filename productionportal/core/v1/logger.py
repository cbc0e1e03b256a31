"""
Centralized logging configuration.
All modules should use `get_logger(__name__)` to obtain a logger instance.
"""

import json
import logging
import os
import sys

_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_initialized = False


def _init_logging() -> None:
    """Configure the productionportal logger tree once.

    Level comes from PP_LOG_LEVEL (default INFO).
    """
    global _initialized
    if _initialized:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT, _DATE_FORMAT))
    root = logging.getLogger("productionportal")
    root.setLevel(os.environ.get("PP_LOG_LEVEL", "INFO").upper())
    root.addHandler(handler)
    _initialized = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a named logger instance.

    Args:
        name: Usually ``__name__`` of the calling module.

    Returns:
        A configured logging.Logger.
    """
    _init_logging()
    if not name.startswith("productionportal"):
        name = f"productionportal.{name}"
    return logging.getLogger(name)


def log_step(logger: logging.Logger, tag: str, step: str, details=None) -> None:
    """Log one step of a request handler as ``[TAG] step - {json}``."""
    suffix = f" - {json.dumps(details, default=str)}" if details else ""
    logger.info("[%s] %s%s", tag, step, suffix)
