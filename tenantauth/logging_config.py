"""Logging setup: JSON or plain formatters with secret redaction.

Modules log with ``logging.getLogger(__name__)`` and pass structured
context through ``extra={...}``. The formatters here make sure none of
that context leaks a password, token or hash.
"""

import json
import logging
import re
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
tenant_id_var: ContextVar[Optional[str]] = ContextVar("tenant_id", default=None)

REDACTED = "[REDACTED]"

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "new_password",
        "current_password",
        "password_hash",
        "token",
        "access_token",
        "refresh_token",
        "invite_token",
        "authorization",
        "secret",
        "jwt_secret",
    }
)

_BEARER_RE = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9\-_\.=+/]+")

# Attributes every LogRecord has; anything else came in through ``extra``.
_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
    }
)


def sanitize_str(value: str) -> str:
    """Mask bearer credentials embedded in free text."""
    return _BEARER_RE.sub(f"Bearer {REDACTED}", value)


def sanitize_obj(value: Any, key: Optional[str] = None) -> Any:
    """Recursively redact sensitive keys from a log payload."""
    if key is not None and key.lower() in SENSITIVE_KEYS:
        return REDACTED
    if isinstance(value, dict):
        return {k: sanitize_obj(v, str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_obj(v) for v in value]
    if isinstance(value, str):
        return sanitize_str(value)
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return str(value)


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: sanitize_obj(value, key)
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line with request context and sanitised extras."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": sanitize_str(record.getMessage()),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }
        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id
        tenant_id = tenant_id_var.get()
        if tenant_id:
            log_data["tenant_id"] = tenant_id
        if record.exc_info:
            log_data["exc_info"] = sanitize_str(self.formatException(record.exc_info))
        log_data.update(_extra_fields(record))
        return json.dumps(log_data, default=str)


class PlainFormatter(logging.Formatter):
    """Human-readable formatter for local development."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-8s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = sanitize_str(super().format(record))
        extras = _extra_fields(record)
        if extras:
            line = f"{line} {json.dumps(extras, default=str)}"
        return line


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure the root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        log_format: ``json`` for structured output, anything else for plain text.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level.upper())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else PlainFormatter())
    root_logger.addHandler(handler)
