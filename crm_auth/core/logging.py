"""JSON log lines for the auth service, tagged with the request correlation id.

Only whitelisted ``extra`` keys are emitted. A ``recipient`` extra is masked
again by the formatter, so an unmasked address never reaches the output.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

CORRELATION_ID_CTX: ContextVar[str] = ContextVar("correlation_id", default="")

_IDENTITY_KEYS = ("user_id", "session_id", "role", "client_ip")
_EVENT_KEYS = ("purpose", "reason", "flags", "recipient")
_REQUEST_KEYS = ("path", "method", "status_code")

# Chatty third-party loggers held at WARNING or above.
_QUIET_LOGGERS = ("pymongo", "uvicorn.access")


def redact_email(email: str) -> str:
    """Keep the first two characters of the local part and the domain."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _log_value(key: str, value: Any) -> Any:
    if key == "recipient":
        return redact_email(str(value))
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return value


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            "correlation_id": CORRELATION_ID_CTX.get(),
        }
        for key in (*_IDENTITY_KEYS, *_EVENT_KEYS, *_REQUEST_KEYS):
            value = getattr(record, key, None)
            if value in (None, "") or value == set():
                continue
            payload[key] = _log_value(key, value)

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Route every logger through one stdout JSON handler."""
    normalized_level = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(normalized_level)
    root_logger.addHandler(handler)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(normalized_level, logging.WARNING))


def set_correlation_id(correlation_id: str) -> None:
    CORRELATION_ID_CTX.set(correlation_id)
