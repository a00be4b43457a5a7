from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any

from app.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(settings: Settings) -> logging.Logger:
    """
    Configure the root logger:
    - Console shows the configured level (INFO by default).
    - When LOG_FILE is set, a rotating audit file stores DEBUG and above.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if settings.log_file else settings.log_level)

    fmt = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    ch.setLevel(settings.log_level)

    root.handlers.clear()
    root.addHandler(ch)

    if settings.log_file:
        log_dir = os.path.dirname(settings.log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        fh = RotatingFileHandler(settings.log_file, maxBytes=1_000_000, backupCount=10, encoding="utf-8")
        fh.setFormatter(fmt)
        fh.setLevel(logging.DEBUG)
        root.addHandler(fh)

    # APScheduler logs every job execution at INFO.
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    return root


def kv(**kwargs: Any) -> str:
    """Key=value compact formatting (values repr()'d for clarity)."""
    return " ".join(f"{k}={v!r}" for k, v in kwargs.items())
