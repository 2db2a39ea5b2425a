"""
Structured logging configuration.

Provides:
    • JSON-formatted logs for production (machine-parseable)
    • Pretty console logs for development (human-readable)
    • Request-scoped context (request_id, client_ip, endpoint)

Usage:
    from alerthub.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Alert created", extra={"alert_id": alert.id, "version": 1})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict

from alerthub.app.core.config import settings

# ── Context variable for request-scoped data ──
_request_context: ContextVar[Dict[str, Any]] = ContextVar(
    "request_context", default={}
)

# LogRecord extras understood by the formatters
_ENGINE_FIELDS = ("alert_id", "version", "kind", "session_id", "subject_id", "recipient_count")
_HTTP_FIELDS = ("duration_ms", "status_code", "endpoint")


def set_request_context(**kwargs: Any) -> None:
    """Set request-scoped log context (call from middleware)."""
    _request_context.set(kwargs)


def get_request_context() -> Dict[str, Any]:
    """Get current request context."""
    return _request_context.get()


# ── JSON Formatter (Production) ──

class JSONFormatter(logging.Formatter):
    """
    One JSON object per line.

    Alert-engine extras (``alert_id``, ``version``, ``kind``, ``session_id``,
    ``subject_id``) are grouped under ``"alert"`` so a log pipeline can
    index every event of one alert or one observer session.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        ctx = get_request_context()
        if ctx:
            entry["request"] = ctx

        engine = _engine_fields(record)
        if engine:
            entry["alert"] = engine
        for key in _HTTP_FIELDS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }
        return json.dumps(entry, default=str)


# ── Pretty Formatter (Development) ──

class PrettyFormatter(logging.Formatter):
    """Coloured console output with request id and alert/session tags."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        tags = []
        request_id = get_request_context().get("request_id")
        if request_id:
            tags.append(request_id[:8])
        engine = _engine_fields(record)
        if "session_id" in engine:
            tags.append(f"s:{engine['session_id']}")
        if "alert_id" in engine:
            tag = engine["alert_id"]
            if "version" in engine:
                tag += f"@v{engine['version']}"
            tags.append(tag)

        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"
            f"{' [' + ' '.join(tags) + ']' if tags else ''} {record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


def _engine_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: getattr(record, k) for k in _ENGINE_FIELDS if getattr(record, k, None) is not None}


# ── Setup ──

def setup_logging() -> None:
    """Install the environment's formatter on the root logger (idempotent)."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if settings.is_production else PrettyFormatter())
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "httpx", "aiosqlite", "websockets", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
