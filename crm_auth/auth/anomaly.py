"""Per-request anomaly detection on authenticated sessions."""

from __future__ import annotations

import logging

from crm_auth.auth.models import SessionRecord
from crm_auth.auth.sessions import SessionManager

LOGGER = logging.getLogger(__name__)


def detect_anomalies(
    session: SessionRecord,
    ip_address: str,
    user_agent: str,
    active_sessions: int,
    max_concurrent: int,
) -> set[str]:
    """Flags this request would raise, compared with what the session recorded at creation."""
    flags: set[str] = set()
    if ip_address and session.ip_address and ip_address != session.ip_address:
        flags.add("unusual_location")
    if user_agent and session.user_agent and user_agent != session.user_agent:
        flags.add("suspicious_activity")
    if active_sessions > max_concurrent:
        flags.add("concurrent_sessions")
    return flags


class AnomalyDetector:
    """Annotate sessions with security flags. Never blocks a request."""

    def __init__(self, sessions: SessionManager) -> None:
        self._sessions = sessions

    def inspect(self, session: SessionRecord, ip_address: str, user_agent: str) -> set[str]:
        try:
            flags = detect_anomalies(
                session,
                ip_address,
                user_agent,
                self._sessions.count_active(session.user_id),
                self._sessions.max_concurrent,
            )
            new_flags = flags - session.security_flags.raised()
            if new_flags:
                self._sessions.raise_flags(session.session_id, new_flags)
                LOGGER.warning(
                    "session_anomaly_detected",
                    extra={
                        "user_id": session.user_id,
                        "session_id": session.session_id,
                        "client_ip": ip_address,
                        "flags": sorted(new_flags),
                    },
                )
            return flags
        except Exception:
            LOGGER.exception("anomaly_detection_failed", extra={"session_id": session.session_id})
            return set()
