"""Logger set-up writing to standard error."""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LOGGER_NAME = "aribts"
NO_TIMESTAMP_ENV = "ARIBTS_LOG_NO_TIMESTAMP"

_LEVEL_LETTERS = {
    TRACE: "T",
    logging.DEBUG: "D",
    logging.INFO: "I",
    logging.WARNING: "W",
    logging.ERROR: "E",
    logging.CRITICAL: "C",
}


class _Formatter(logging.Formatter):
    def __init__(self, name: str, timestamp: bool) -> None:
        super().__init__()
        self._name = name
        self._timestamp = timestamp

    def format(self, record: logging.LogRecord) -> str:
        letter = _LEVEL_LETTERS.get(record.levelno, record.levelname[:1])
        text = f"{letter} {self._name} {record.getMessage()}"
        if self._timestamp:
            stamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%dT%H:%M:%S.%f")
            text = f"{stamp} {text}"
        if record.exc_info:
            text = f"{text}\n{self.formatException(record.exc_info)}"
        return text


def init_logger(name: str) -> logging.Logger:
    """Configure the package logger to write to stderr under `name`."""
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    timestamp = os.environ.get(NO_TIMESTAMP_ENV) != "1"
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_Formatter(name, timestamp))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger