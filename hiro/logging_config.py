"""
Logging setup for the API server and the scripts.

Call setup_logging() once at startup; modules log through
logging.getLogger("hiro.<area>").

Background work (sync jobs, campaign batches) wraps its body in
log_context(job_id=...) or log_context(campaign_id=...) so every line it
emits, including lines from shared helpers such as the Graph client, carries
the id without threading it through each call.

Formats (LOG_FORMAT):
- "text": "2024-05-01 10:00:00 [hiro.facebook.sync] INFO: Synced 12 contacts (job_id=sync_ab12)"
- "json": one JSON object per line with the context fields as top-level keys
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone

from hiro import config

# Fields copied onto log lines, from log_context() or a caller's extra=
CONTEXT_FIELDS = ("job_id", "campaign_id", "contact_id", "phase", "component", "duration_ms")

_context: ContextVar = ContextVar("hiro_log_context", default={})


@contextmanager
def log_context(**fields):
    """Bind fields to every record logged in this block (this thread/task only).

    Nested blocks add to the outer fields; None values are ignored.
    """
    bound = dict(_context.get())
    bound.update({k: v for k, v in fields.items() if v is not None})
    token = _context.set(bound)
    try:
        yield bound
    finally:
        _context.reset(token)


def current_context() -> dict:
    return dict(_context.get())


class ContextFilter(logging.Filter):
    """Copy bound context onto records. An explicit extra= value wins."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def _context_of(record: logging.LogRecord) -> dict:
    return {key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)}


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }
        entry.update(_context_of(record))
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):

    def __init__(self):
        super().__init__(fmt="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
                         datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context_of(record)
        if context:
            line += " (" + ", ".join(f"{k}={v}" for k, v in context.items()) + ")"
        return line


def build_handler(stream=None, fmt: str = "text") -> logging.Handler:
    """Stream handler with the context filter and the chosen formatter."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(JSONFormatter() if fmt == "json" else TextFormatter())
    return handler


_initialized = False


def setup_logging(level: str = None, fmt: str = None, log_file: str = None):
    """Configure the root logger. Idempotent.

    Defaults come from LOG_LEVEL, LOG_FORMAT and LOG_FILE in hiro.config.
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    level = (level or config.LOG_LEVEL).upper()
    fmt = fmt or config.LOG_FORMAT
    log_file = log_file or config.LOG_FILE

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.INFO))
    root_logger.handlers.clear()
    root_logger.addHandler(build_handler(fmt=fmt))

    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.addFilter(ContextFilter())
        file_handler.setFormatter(JSONFormatter() if fmt == "json" else TextFormatter())
        root_logger.addHandler(file_handler)

    # requests retries and uvicorn access lines drown out job progress
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    logging.getLogger("hiro").info("Logging configured: level=%s, format=%s%s",
                                   level, fmt, f", file={log_file}" if log_file else "")
