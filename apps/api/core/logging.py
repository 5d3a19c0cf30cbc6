"""
Structured logging for the session engine.

JSON lines in production so session lifecycle records can be filtered
by sessionId / athleteId / eventId downstream; readable text locally.

Usage:
    logger = session_logger(__name__)
    logger.info("Session started", sessionId=session.id, athleteId=athlete_id)
"""
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.config import settings

# Attributes every LogRecord carries; anything else came in through `extra`.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def _context_fields(record: logging.LogRecord) -> Dict[str, Any]:
    fields = dict(getattr(record, "extra_fields", None) or {})
    for key, value in vars(record).items():
        if key not in _RECORD_ATTRS and key != "extra_fields":
            fields.setdefault(key, value)
    return fields


class JSONFormatter(logging.Formatter):
    """One JSON object per record, context fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        log_data.update(_context_fields(record))

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ContextTextFormatter(logging.Formatter):
    """Plain text with context appended as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _context_fields(record)
        if fields:
            line += " | " + " ".join(f"{k}={v}" for k, v in sorted(fields.items()))
        return line


class SessionLogAdapter(logging.LoggerAdapter):
    """Logger accepting context as keyword arguments: logger.info(msg, sessionId=...)."""

    def log(self, level, msg, *args, exc_info=None, **fields):
        if self.isEnabledFor(level):
            merged = {**(self.extra or {}), **fields}
            self.logger.log(level, msg, *args, exc_info=exc_info, extra={"extra_fields": merged})

    def debug(self, msg, *args, **fields):
        self.log(logging.DEBUG, msg, *args, **fields)

    def info(self, msg, *args, **fields):
        self.log(logging.INFO, msg, *args, **fields)

    def warning(self, msg, *args, **fields):
        self.log(logging.WARNING, msg, *args, **fields)

    def error(self, msg, *args, **fields):
        self.log(logging.ERROR, msg, *args, **fields)


def session_logger(name: str, **context) -> SessionLogAdapter:
    """Module logger that attaches session context to every record."""
    return SessionLogAdapter(logging.getLogger(name), context)


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Configure the root logger once, at process start.

    Args:
        level: Overrides LOG_LEVEL

    Returns:
        The root logger
    """
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    if settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production":
        formatter = JSONFormatter()
    else:
        formatter = ContextTextFormatter("%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s: %(message)s")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    # SQL echo and pool chatter only when DEBUG is on
    noisy = logging.DEBUG if settings.DEBUG else logging.WARNING
    logging.getLogger("sqlalchemy.engine").setLevel(noisy)
    logging.getLogger("sqlalchemy.pool").setLevel(noisy)

    return root_logger
