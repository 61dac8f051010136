"""
Logging configuration

One stream handler on the "a2mp" logger; module loggers propagate to it.
"""
import logging
import sys
from a2mp.config import get_settings

settings = get_settings()

ROOT_LOGGER = "a2mp"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _configure_root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        level = "DEBUG" if settings.DEBUG else settings.LOG_LEVEL.upper()
        root.setLevel(getattr(logging, level, logging.INFO))
    return root


def get_logger(name: str) -> logging.Logger:
    """Logger under the a2mp namespace (engine and queue messages are tagged [Component])"""
    _configure_root()
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
