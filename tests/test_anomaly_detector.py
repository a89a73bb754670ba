from __future__ import annotations

from pathlib import Path

from crm_auth.auth.anomaly import AnomalyDetector, detect_anomalies
from crm_auth.auth.models import SessionRecord
from tests.auth_fixtures import START, add_identity, build_stack


def _record(**overrides) -> SessionRecord:
    values = {
        "session_id": "s-1",
        "user_id": "u-1",
        "access_jti": "a",
        "refresh_jti": "r",
        "access_expires_at": START + 3600,
        "refresh_expires_at": START + 7200,
        "ip_address": "10.0.0.1",
        "user_agent": "agent-a",
        "created_at": START,
        "last_activity_at": START,
    }
    values.update(overrides)
    return SessionRecord(**values)


def test_detect_anomalies_compares_against_session_origin() -> None:
    record = _record()

    assert detect_anomalies(record, "10.0.0.1", "agent-a", 1, 3) == set()
    assert detect_anomalies(record, "10.9.9.9", "agent-a", 1, 3) == {"unusual_location"}
    assert detect_anomalies(record, "10.0.0.1", "agent-b", 4, 3) == {"suspicious_activity", "concurrent_sessions"}


def test_detect_anomalies_ignores_missing_request_metadata() -> None:
    assert detect_anomalies(_record(), "", "", 1, 3) == set()
    assert detect_anomalies(_record(ip_address="", user_agent=""), "10.0.0.2", "agent-b", 1, 3) == set()


def test_inspect_persists_new_flags_without_blocking(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    identity = add_identity(stack.identities)
    issued = stack.sessions.create(identity, "10.0.0.1", "agent-a")
    record = stack.sessions.get(issued.session_id)

    flags = stack.anomaly.inspect(record, "172.16.0.5", "agent-a")
    stored = stack.sessions.get(issued.session_id)

    assert flags == {"unusual_location"}
    assert stored.security_flags.unusual_location is True
    assert stored.security_flags.suspicious_activity is False
    assert stored.is_active


def test_inspect_swallows_detection_failures(tmp_path: Path) -> None:
    class _BrokenSessions:
        max_concurrent = 3

        def count_active(self, user_id: str) -> int:
            raise RuntimeError("store offline")

    detector = AnomalyDetector(_BrokenSessions())  # type: ignore[arg-type]

    assert detector.inspect(_record(), "10.9.9.9", "agent-b") == set()
