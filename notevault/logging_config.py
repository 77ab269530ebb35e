"""
Logging setup shared by the API, the CLI and the core modules.

Every module asks for its logger through get_logger("area"); loggers live
under the "notevault" namespace so one call to setup_logging() configures
all of them.
"""
from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

ROOT_LOGGER = "notevault"
LOG_FMT = "%(asctime)sZ | %(levelname)-7s | %(name)s | %(funcName)s:%(lineno)d | %(message)s"
DATE_FMT = "%Y-%m-%d %H:%M:%S"


class _UTCFormatter(logging.Formatter):
    converter = staticmethod(lambda *_: datetime.now(timezone.utc).timetuple())


def get_logger(name: str) -> logging.Logger:
    if name.startswith(ROOT_LOGGER):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def setup_logging(level: str | int = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the notevault logger tree.

    Args:
        level: Level name or number (default: INFO)
        log_file: Optional path for a rotating log file (1 MB x 3)

    Returns:
        The root notevault logger
    """
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level if isinstance(level, int) else str(level).upper())

    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, RotatingFileHandler) for h in root.handlers):
        sh = logging.StreamHandler()
        sh.setFormatter(_UTCFormatter(LOG_FMT, DATE_FMT))
        root.addHandler(sh)

    if log_file and not any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        fh = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        fh.setFormatter(_UTCFormatter(LOG_FMT, DATE_FMT))
        root.addHandler(fh)

    return root


def short(value: str, n: int = 10) -> str:
    """Shorten a hex identifier for log lines; never use on secrets."""
    if not value or len(value) <= n + 2:
        return value
    return f"{value[:n]}…"


logging.getLogger(ROOT_LOGGER).addHandler(logging.NullHandler())
