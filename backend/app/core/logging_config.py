"""
Structured logging for the alert engine.

Two output modes share one request/connection context:

    production   → one JSON object per line, alert fields promoted to keys
    otherwise    → coloured single-line console output

Context (request id, actor, WebSocket user) lives in a ContextVar so a
log line emitted deep inside the dispatcher still carries the id of the
request that triggered it.

Usage:
    from backend.app.core.logging_config import setup_logging, log_context

    setup_logging()
    with log_context(actor_id=2):
        logger.info("Alert sent", extra={"alert_id": 12, "recipient_count": 40})
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from backend.app.core.config import settings

_log_context: ContextVar[Dict[str, Any]] = ContextVar("alert_log_context", default={})

# Record attributes passed through ``extra=`` that are worth indexing
ALERT_FIELDS = (
    "alert_id", "incident_id", "template_id", "user_id", "recipient_count",
    "channel", "event", "room", "duration_ms", "status_code", "endpoint",
)

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine")


def get_log_context() -> Dict[str, Any]:
    return dict(_log_context.get())


@contextmanager
def log_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """Merge ``fields`` into the current context for the duration of the block."""
    merged = {**_log_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _log_context.set(merged)
    try:
        yield merged
    finally:
        _log_context.reset(token)


def _alert_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in ALERT_FIELDS if hasattr(record, key)}


class JSONFormatter(logging.Formatter):
    """One JSON document per record for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        context = get_log_context()
        if context:
            entry["context"] = context
        entry.update(_alert_fields(record))

        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            entry["exception"] = {"type": type(exc).__name__, "message": str(exc)}

        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Console format: ``12:00:01 INFO     [3f2a91c0] actor=2 alert=12 logger: message``."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _tags(self, record: logging.LogRecord) -> str:
        context = get_log_context()
        tags = []
        if context.get("request_id"):
            tags.append(f"[{context['request_id'][:8]}]")
        if context.get("actor_id") is not None:
            tags.append(f"actor={context['actor_id']}")
        if context.get("ws_user") is not None:
            tags.append(f"ws_user={context['ws_user']}")
        for key, label in (("alert_id", "alert"), ("incident_id", "incident"), ("template_id", "template")):
            if hasattr(record, key):
                tags.append(f"{label}={getattr(record, key)}")
        return " ".join(tags)

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:8s}"
        if self.use_color:
            level = f"{self.COLORS.get(record.levelname, self.RESET)}{level}{self.RESET}"

        tags = self._tags(record)
        line = f"{self.formatTime(record, '%H:%M:%S')} {level}"
        if tags:
            line += f" {tags}"
        line += f" {record.name}: {record.getMessage()}"

        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """Install a single stdout handler on the root logger."""
    if json_output is None:
        json_output = settings.is_production
    level_name = (level or settings.LOG_LEVEL).upper()

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_output else PrettyFormatter(use_color=sys.stdout.isatty()))
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
