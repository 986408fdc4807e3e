"""Logging setup: JSON lines for services, plain text for terminals."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

# Structured fields the pager, drivers and runner attach via ``extra=``.
STRUCTURED_FIELDS = ("target", "endpoint", "metadata", "page", "records", "duration_s", "run_id")

_TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def _structured(record: logging.LogRecord) -> dict:
    return {key: getattr(record, key) for key in STRUCTURED_FIELDS if getattr(record, key, None) is not None}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, structured extras merged at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_structured(record))
        if record.exc_info and record.exc_info[1]:
            entry["error_type"] = type(record.exc_info[1]).__name__
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines with structured extras appended as key=value."""

    def __init__(self) -> None:
        super().__init__(_TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = _structured(record)
        if extras:
            line += " " + " ".join(f"{k}={v}" for k, v in extras.items())
        return line


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Attach a single stderr handler to the ``orgsync`` logger."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(TextFormatter() if fmt == "text" else JsonFormatter())
    logger = logging.getLogger("orgsync")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False
