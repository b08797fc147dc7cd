"""
Logging setup for the engine and its command-line entry point.

Every module logs through logging.getLogger(__name__) under the "linkdiag"
namespace. Device context travels as `extra=` fields (device_id, vendor,
state, error_id, duration_ms); the JSON formatter lifts them to top-level
keys and the text formatter prefixes the device id.
"""

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

from config.settings import get_settings

ROOT_LOGGER = "linkdiag"
CONTEXT_FIELDS = ("device_id", "vendor", "state", "error_id", "duration_ms")

TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [%(device_id)s] %(message)s"
FILE_MAX_BYTES = 10 * 1024 * 1024
FILE_BACKUPS = 5


class JSONFormatter(logging.Formatter):
    """One JSON object per record, context fields included when present."""

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _console_formatter(fmt: str) -> logging.Formatter:
    if fmt == "json":
        return JSONFormatter()
    return logging.Formatter(TEXT_FORMAT, defaults={"device_id": "-"})


def configure_logging(
    level: Optional[str] = None,
    fmt: Optional[str] = None,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """Route "linkdiag" records to stderr and, optionally, a rotating file.

    Args:
        level: Level name; defaults to LOG_LEVEL
        fmt: "json" or "text" for the console; defaults to LOG_FORMAT
        log_file: Rotating JSON log file; defaults to LOG_FILE

    Calling it again replaces the handlers instead of stacking them.
    """
    settings = get_settings()
    level_name = (level or settings.log_level).upper()
    log_file = log_file if log_file is not None else settings.log_file

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setFormatter(_console_formatter(fmt or settings.log_format))
    logger.addHandler(console)

    # File output is always JSON so it can be shipped as-is
    if log_file:
        file_handler = RotatingFileHandler(log_file, maxBytes=FILE_MAX_BYTES, backupCount=FILE_BACKUPS)
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)

    return logger
