from __future__ import annotations

import json
import logging

from crm_auth.core.logging import JsonLogFormatter, redact_email, set_correlation_id, setup_logging


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("crm_auth.test", logging.INFO, __file__, 1, "session_created", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_correlation_id_and_known_extras() -> None:
    set_correlation_id("req-42")

    payload = json.loads(
        JsonLogFormatter().format(_record(user_id="u1", session_id="s1", password_hash="never"))
    )

    assert payload["event"] == "session_created"
    assert payload["correlation_id"] == "req-42"
    assert payload["user_id"] == "u1"
    assert payload["session_id"] == "s1"
    assert "password_hash" not in payload


def test_json_formatter_serializes_flag_sets() -> None:
    payload = json.loads(
        JsonLogFormatter().format(_record(flags={"unusual_location", "concurrent_sessions"}, client_ip=""))
    )

    assert payload["flags"] == ["concurrent_sessions", "unusual_location"]
    assert "client_ip" not in payload


def test_json_formatter_masks_recipient_addresses() -> None:
    raw = json.loads(JsonLogFormatter().format(_record(recipient="alice@crm.test")))
    masked = json.loads(JsonLogFormatter().format(_record(recipient=redact_email("alice@crm.test"))))

    assert raw["recipient"] == masked["recipient"] == "al***@crm.test"
    assert redact_email("nonsense") == "redacted"


def test_setup_logging_quiets_driver_and_access_loggers() -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        setup_logging("debug")

        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, JsonLogFormatter)
        assert logging.getLogger("pymongo").level == logging.WARNING
        assert logging.getLogger("uvicorn.access").level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
