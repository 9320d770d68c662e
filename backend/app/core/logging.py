"""Silence Notes logging configuration."""

import json
import logging
import sys
from typing import Literal

LOGGER_PREFIX = "silence_notes"

# Human-readable format for development
DEV_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per line.

    Fields passed through ``extra={"event": ...}`` are copied into the entry so
    security events stay machine-readable in the log pipeline.
    """

    def __init__(self):
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        event = getattr(record, "event", None)
        if isinstance(event, dict):
            log_entry["event"] = event
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def setup_logging(
    level: str = "INFO",
    format_type: Literal["structured", "dev"] = "dev",
) -> None:
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: Log format - 'structured' for JSON, 'dev' for readable
    """
    if format_type == "structured":
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
        logging.root.handlers = [handler]
        logging.root.setLevel(getattr(logging, level.upper()))
    else:
        logging.basicConfig(
            level=getattr(logging, level.upper()),
            format=DEV_FORMAT,
            datefmt="%Y-%m-%d %H:%M:%S",
            stream=sys.stdout,
            force=True,
        )

    for logger_name in ["uvicorn", "uvicorn.error", "uvicorn.access", "httpx"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    # Keep SQLAlchemy quiet unless debugging
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if level.upper() == "DEBUG" else logging.WARNING
    )

    get_logger("startup").info(f"Logging configured: level={level}, format={format_type}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the silence_notes namespace."""
    return logging.getLogger(f"{LOGGER_PREFIX}.{name}")
