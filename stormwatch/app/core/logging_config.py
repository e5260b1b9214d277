"""
Logging setup for the impact service.

    production   one JSON object per line, structured extras lifted to the top level
    otherwise    coloured single-line console output

Scoped context rides on a ContextVar so every line inside a monitoring
run carries its run_id, and every line inside a request its request_id:

    with log_context(run_id=run_id):
        ...                       # all records tagged with run_id

Usage:
    from stormwatch.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Alert %s created", alert.id, extra={"alert_id": alert.id})
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator

from stormwatch.app.core.config import settings

_context: ContextVar[Dict[str, Any]] = ContextVar("stormwatch_log_context", default={})

# Pipeline identifiers passed via ``extra=`` and promoted in JSON output
STRUCTURED_FIELDS = (
    "run_id", "alert_id", "property_id", "rep_id", "channel",
    "severity", "duration_ms", "status_code", "endpoint",
)

_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine", "aiosqlite")


def get_log_context() -> Dict[str, Any]:
    return dict(_context.get())


@contextmanager
def log_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """Layer fields over the current context; restored on exit."""
    merged = {**_context.get(), **fields}
    token = _context.set(merged)
    try:
        yield merged
    finally:
        _context.reset(token)


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(_context.get())
        for key in STRUCTURED_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[1] is not None:
            entry["exc_type"] = type(record.exc_info[1]).__name__
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):

    LEVEL_COLOURS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.LEVEL_COLOURS.get(record.levelname, "")
        ctx = _context.get()
        tags = []
        if ctx.get("run_id"):
            tags.append(f"run:{str(ctx['run_id'])[:8]}")
        if ctx.get("request_id"):
            tags.append(f"req:{str(ctx['request_id'])[:8]}")
        prefix = f" [{' '.join(tags)}]" if tags else ""

        line = (
            f"{colour}{self.formatTime(record, '%H:%M:%S')} {record.levelname:<8}{self.RESET}"
            f"{prefix} {record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[1] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging() -> None:
    """Install one stdout handler on the root logger for the current environment."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if settings.is_production else ConsoleFormatter())
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
