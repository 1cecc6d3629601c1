"""
Logging setup.

Every record emitted while a request is active carries that request's
``request_id`` and, once the caller is resolved, ``actor_id``.  Services
add ``request_ref`` and ``event_type`` through ``extra=``.

- DEBUG / TESTING: one readable line per record
- otherwise: one JSON object per record
- LOG_LEVEL env variable overrides the level
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

_CONTEXT_KEYS = ("request_id", "actor_id")
_EXTRA_KEYS = ("method", "path", "status", "duration_ms", "remote_addr", "request_ref", "event_type")


class RequestContextFilter(logging.Filter):
    """Copy request id and actor id from ``flask.g`` onto the record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key in _CONTEXT_KEYS:
            if getattr(record, key, None) is None:
                value = g.get(key) if has_request_context() else None
                setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _CONTEXT_KEYS + _EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """``12:00:01 INFO     [a1b2c3 u7] campusflow.x: message (REQ-...)``"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.now().strftime("%H:%M:%S")

        context = []
        if getattr(record, "request_id", None):
            context.append(str(record.request_id))
        if getattr(record, "actor_id", None) is not None:
            context.append(f"u{record.actor_id}")
        ctx_str = f" [{' '.join(context)}]" if context else ""

        ref = getattr(record, "request_ref", None)
        ref_str = f" ({ref})" if ref else ""
        duration = getattr(record, "duration_ms", None)
        dur_str = f" [{duration:.0f}ms]" if duration is not None else ""

        line = (f"{color}{ts} {record.levelname:<8}{self.RESET}{ctx_str} "
                f"{record.name}: {record.getMessage()}{ref_str}{dur_str}")
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger."""
    readable = app.config.get("DEBUG", False) or app.config.get("TESTING", False)
    level_name = os.getenv("LOG_LEVEL", "DEBUG" if readable else "INFO")
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ReadableFormatter() if readable else JSONFormatter())
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)

    root = logging.getLogger()
    # Repeated create_app calls must not stack handlers.
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine", "reportlab"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not app.config.get("TESTING", False):
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "readable" if readable else "JSON")
