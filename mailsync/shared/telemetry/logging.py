"""Logging configuration for the sync engine."""

import logging
import sys

from mailsync.core.config import get_settings

# Chatty third-party loggers that log request bodies or auth headers at DEBUG.
_QUIET_LOGGERS = ("googleapiclient.discovery_cache", "msal", "aioimaplib", "httpx")


def setup_logging() -> None:
    """Configure process-wide logging.

    Level is DEBUG when settings.debug is True, otherwise INFO. Output goes
    to stdout. Provider client libraries are capped at WARNING so tokens and
    message bodies never reach the log stream.
    """
    settings = get_settings()
    log_level = logging.DEBUG if settings.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Return a logger for the given module name.

    Args:
        name: Usually __name__ of the calling module.

    Returns:
        Logger instance.
    """
    return logging.getLogger(name)
