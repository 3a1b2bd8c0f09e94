from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from core.settings import LOGGING, SYNC_LOG_PATH


LOGGER_NAME = "flowsync.sync"


def ensure_logger(name: str = LOGGER_NAME, path: Optional[Path] = None) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        target = Path(path or SYNC_LOG_PATH)
        target.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            target,
            maxBytes=LOGGING.max_bytes,
            backupCount=LOGGING.backup_count,
            encoding="utf-8",
        )
        handler.setFormatter(logging.Formatter(LOGGING.log_format))
        logger.addHandler(handler)
    logger.setLevel(LOGGING.level)
    return logger


__all__ = ["LOGGER_NAME", "ensure_logger"]
