"""Logging setup for atstream command-line tools.

The library only creates module loggers under ``atstream``; handlers are
installed here, by the CLI.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log collectors."""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


class SimpleFormatter(logging.Formatter):
    def format(self, record):
        return f"[{record.levelname}] {record.name}: {record.getMessage()}"


def configure_logging(level=None, stream=None):
    """Configure the ``atstream`` logger.

    Uses JSON output when ENVIRONMENT=production and DEBUG level when
    ENVIRONMENT=development. Logs go to stderr by default so stdout stays
    free for event output.
    """
    environment = os.getenv("ENVIRONMENT")
    if level is None:
        level = logging.DEBUG if environment == "development" else logging.INFO

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level)
    if environment == "production":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(SimpleFormatter())

    logger = logging.getLogger("atstream")
    # replace handlers from an earlier call instead of stacking them
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    logger.setLevel(level)
    logger.addHandler(handler)
    logger.propagate = False  # Don't duplicate logs to root logger
    return logger
