from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from typing import Any

from autobalancer.logging_context import CONTEXT_FIELDS, get_logging_context
from autobalancer.security.redaction import redact_data

_HTTP_LOGGERS = {
    "httpx": ("HTTPX_LOG_LEVEL", logging.INFO),
    "httpcore": ("HTTPCORE_LOG_LEVEL", logging.WARNING),
}


class JsonFormatter(logging.Formatter):
    """Render one JSON object per record, enriched with the active execution context."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extras = getattr(record, "extra", None)
        if isinstance(extras, dict):
            payload.update(extras)

        context = get_logging_context()
        for field in CONTEXT_FIELDS:
            if field in context:
                payload[field] = context[field]

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            payload["error_type"] = exc_type.__name__ if exc_type else "Exception"
            payload["error_message"] = str(exc_value) if exc_value is not None else ""
            payload["traceback"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["traceback"] = record.exc_text

        return json.dumps(redact_data(payload), default=str)


def resolve_log_level(level: str | int | None, *, default: int = logging.INFO) -> int:
    if isinstance(level, int):
        return level
    if level is None or not str(level).strip():
        return default
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else default


def setup_logging(level: str | int | None = None) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    resolved_level = resolve_log_level(
        level if level is not None else os.getenv("LOG_LEVEL", "INFO")
    )
    root.setLevel(resolved_level)

    for name, (env_name, quiet_level) in _HTTP_LOGGERS.items():
        default_level = logging.DEBUG if resolved_level <= logging.DEBUG else quiet_level
        logging.getLogger(name).setLevel(
            resolve_log_level(os.getenv(env_name), default=default_level)
        )
