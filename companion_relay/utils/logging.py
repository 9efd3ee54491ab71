# companion_relay/utils/logging.py
"""
File + console logging for the relay.

Handlers live on the package logger ("companion_relay"); every module logger
is a child of it, so one file handle is shared however many modules log.
"""

import logging
from pathlib import Path
from typing import Optional

from companion_relay.config.settings import LogSettings, load_log_settings

PACKAGE_LOGGER = "companion_relay"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_active: Optional[LogSettings] = None


def resolve_level(name: str) -> int:
    level = logging.getLevelName((name or "").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(log_settings: Optional[LogSettings] = None) -> Optional[Path]:
    """
    (Re)build the package logger's handlers and return the log file path,
    or None when file logging is disabled. Safe to call again, e.g. when
    the CLI overrides the level.
    """
    global _active
    log_settings = log_settings or load_log_settings()
    package_logger = logging.getLogger(PACKAGE_LOGGER)

    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    level = resolve_level(log_settings.level)
    package_logger.setLevel(level)
    fmt = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    handlers = [logging.StreamHandler()]
    log_file = log_settings.log_path()
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(fmt)
        package_logger.addHandler(handler)

    _active = log_settings
    return log_file


def get_logger(name: str = PACKAGE_LOGGER) -> logging.Logger:
    """
    Return a logger under the package logger, configuring handlers from the
    environment on first use.
    """
    if _active is None:
        configure_logging()
    if name != PACKAGE_LOGGER and not name.startswith(PACKAGE_LOGGER + "."):
        name = f"{PACKAGE_LOGGER}.{name}"
    return logging.getLogger(name)
