from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

from core.debug_log import DebugLog, DebugLogHandler

_QUIET_LOGGERS = ("httpx", "httpcore", "openai")


def setup_logging(logger_name: str | None = None, debug_log: DebugLog | None = None) -> logging.Logger:
    level_name = str(os.getenv("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    log_file = os.getenv("LOG_FILE", "logs/trade_intent.log")

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)

    file_handler = RotatingFileHandler(log_path, maxBytes=2_000_000, backupCount=5)
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    logger.addHandler(stream_handler)
    logger.addHandler(file_handler)

    if debug_log is not None:
        # the ring buffer sees DEBUG records regardless of LOG_LEVEL
        logger.setLevel(logging.DEBUG)
        logger.addHandler(DebugLogHandler(debug_log))

    if logger_name is not None:
        logger.propagate = False

    return logger


def quiet_third_party_loggers(level: int = logging.WARNING) -> None:
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(level)
