"""Server-persisted sessions bound to signed access and refresh tokens."""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Any, Callable

from crm_auth.auth.errors import (
    AccountInactiveError,
    AccountLockedError,
    InsufficientPermissionError,
    InvalidTokenError,
    RoleNotFoundError,
    SessionExpiredError,
    SessionNotFoundError,
)
from crm_auth.auth.models import DeviceInfo, Identity, IssuedSession, SecurityFlags, SessionRecord, ValidatedSession
from crm_auth.auth.repository import IdentityRepository, SessionRepository
from crm_auth.core.config import AuthConfig, SessionConfig
from crm_auth.core.security import TokenError, TokenExpiredError, build_signed_token, decode_signed_token
from crm_auth.roles.resolver import PermissionResolver

LOGGER = logging.getLogger(__name__)

_MOBILE_RE = re.compile(r"Mobile|Android|iPhone|iPad")
_BROWSER_RE = re.compile(r"(Chrome|Firefox|Safari|Edge|Opera)")
_OS_RE = re.compile(r"(Windows|Mac|Linux|Android|iOS)")


def parse_device_info(user_agent: str) -> DeviceInfo:
    """Coarse browser, OS and form factor from a User-Agent header."""
    ua = user_agent or ""
    is_mobile = bool(_MOBILE_RE.search(ua))
    browser = _BROWSER_RE.search(ua)
    os_match = _OS_RE.search(ua)
    return DeviceInfo(
        browser=browser.group(1) if browser else "Unknown",
        os=os_match.group(1) if os_match else "Unknown",
        device="Mobile" if is_mobile else "Desktop",
        is_mobile=is_mobile,
    )


class SessionManager:
    """Create, validate, refresh and terminate sessions.

    A token is never trusted on its signature alone: every validation looks
    the session up by token id and checks the record and its owner.
    """

    def __init__(
        self,
        repo: SessionRepository,
        identities: IdentityRepository,
        resolver: PermissionResolver,
        auth_config: AuthConfig,
        session_config: SessionConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._repo = repo
        self._identities = identities
        self._resolver = resolver
        self._auth = auth_config
        self._config = session_config
        self._clock = clock

    @property
    def max_concurrent(self) -> int:
        return self._config.max_concurrent

    def _now(self) -> int:
        return int(self._clock())

    def _permission_claims(self, identity: Identity) -> dict[str, Any]:
        try:
            return self._resolver.resolve_identity(identity).as_claims()
        except RoleNotFoundError as exc:
            raise InsufficientPermissionError("Role is not active") from exc

    def _access_token(self, identity: Identity, jti: str, now: int) -> str:
        payload = {
            "jti": jti,
            "sub": identity.user_id,
            "email": identity.email,
            "role": identity.role,
            "permissions": self._permission_claims(identity),
            "status": identity.status,
            "type": "access",
            "iss": self._auth.issuer,
            "aud": self._auth.audience,
            "iat": now,
            "exp": now + self._auth.access_token_ttl_seconds,
        }
        return build_signed_token(payload, self._auth.secret_key)

    def _refresh_token(self, identity: Identity, jti: str, now: int) -> str:
        payload = {
            "jti": jti,
            "sub": identity.user_id,
            "type": "refresh",
            "iss": self._auth.issuer,
            "aud": self._auth.audience,
            "iat": now,
            "exp": now + self._auth.refresh_token_ttl_seconds,
        }
        return build_signed_token(payload, self._auth.refresh_secret_key)

    def _decode(self, token: str, secret_key: str, expected_type: str) -> dict[str, Any]:
        try:
            claims = decode_signed_token(
                token,
                secret_key,
                issuer=self._auth.issuer,
                audience=self._auth.audience,
                now=self._now(),
            )
        except TokenExpiredError as exc:
            raise SessionExpiredError() from exc
        except TokenError as exc:
            raise InvalidTokenError(str(exc)) from exc
        if str(claims.get("type") or "") != expected_type:
            raise InvalidTokenError("Invalid token type")
        return claims

    def _active_owner(self, user_id: str) -> Identity:
        identity = self._identities.get(user_id)
        if identity is None or identity.status != "active":
            raise AccountInactiveError()
        if identity.is_locked(self._now()):
            raise AccountLockedError(identity.lock_until)
        return identity

    def create(
        self,
        identity: Identity,
        ip_address: str = "",
        user_agent: str = "",
        device_info: DeviceInfo | None = None,
    ) -> IssuedSession:
        now = self._now()
        access_jti = uuid.uuid4().hex
        refresh_jti = uuid.uuid4().hex
        access_token = self._access_token(identity, access_jti, now)
        refresh_token = self._refresh_token(identity, refresh_jti, now)

        flags = SecurityFlags()
        if self._repo.count_active(identity.user_id, now) + 1 > self._config.max_concurrent:
            flags.concurrent_sessions = True

        record = SessionRecord(
            session_id=uuid.uuid4().hex,
            user_id=identity.user_id,
            access_jti=access_jti,
            refresh_jti=refresh_jti,
            access_expires_at=now + self._auth.access_token_ttl_seconds,
            refresh_expires_at=now + self._auth.refresh_token_ttl_seconds,
            ip_address=ip_address,
            user_agent=user_agent,
            device_info=device_info or parse_device_info(user_agent),
            created_at=now,
            last_activity_at=now,
            security_flags=flags,
        )
        self._repo.insert(record)
        LOGGER.info(
            "session_created",
            extra={
                "user_id": identity.user_id,
                "session_id": record.session_id,
                "client_ip": ip_address,
                "flags": sorted(flags.raised()),
            },
        )
        return IssuedSession(
            session_id=record.session_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self._auth.access_token_ttl_seconds,
            security_flags=flags.raised(),
        )

    def validate(self, access_token: str) -> ValidatedSession:
        claims = self._decode(access_token, self._auth.secret_key, "access")
        record = self._repo.get_by_access_jti(str(claims.get("jti") or ""))
        if record is None or not record.is_active or record.terminated_at is not None:
            raise SessionNotFoundError()
        if str(claims.get("sub") or "") != record.user_id:
            raise SessionNotFoundError()
        now = self._now()
        if record.access_expires_at <= now:
            raise SessionExpiredError()

        identity = self._active_owner(record.user_id)
        self._repo.touch(record.session_id, now)
        return ValidatedSession(
            identity=identity,
            session=record.model_copy(update={"last_activity_at": now}),
            claims=claims,
        )

    def refresh(self, refresh_token: str) -> IssuedSession:
        """Issue a new access token on the same session; the refresh token stays the same."""
        claims = self._decode(refresh_token, self._auth.refresh_secret_key, "refresh")
        record = self._repo.get_by_refresh_jti(str(claims.get("jti") or ""))
        if record is None or not record.is_active or record.terminated_at is not None:
            raise SessionNotFoundError("Invalid refresh token")
        now = self._now()
        if record.refresh_expires_at <= now:
            raise SessionExpiredError()
        if str(claims.get("sub") or "") != record.user_id:
            raise InvalidTokenError("Refresh token does not belong to this session")

        identity = self._active_owner(record.user_id)
        access_jti = uuid.uuid4().hex
        access_token = self._access_token(identity, access_jti, now)
        rotated = self._repo.rotate_access(
            record.session_id,
            expected_access_jti=record.access_jti,
            access_jti=access_jti,
            access_expires_at=now + self._auth.access_token_ttl_seconds,
            now=now,
        )
        if not rotated:
            raise SessionNotFoundError("Invalid refresh token")
        LOGGER.info("session_refreshed", extra={"user_id": record.user_id, "session_id": record.session_id})
        return IssuedSession(
            session_id=record.session_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self._auth.access_token_ttl_seconds,
            security_flags=record.security_flags.raised(),
        )

    def terminate(self, session_id: str, reason: str, actor_id: str | None = None) -> bool:
        """Return ``True`` only when this call deactivated the session."""
        changed = self._repo.terminate(session_id, reason=reason, actor_id=actor_id, now=self._now())
        if changed:
            LOGGER.info("session_terminated", extra={"session_id": session_id, "reason": reason})
        return changed

    def terminate_all(
        self,
        user_id: str,
        reason: str,
        actor_id: str | None = None,
        except_session_id: str | None = None,
    ) -> int:
        count = self._repo.terminate_for_user(
            user_id,
            reason=reason,
            actor_id=actor_id,
            now=self._now(),
            except_session_id=except_session_id,
        )
        LOGGER.info("sessions_terminated", extra={"user_id": user_id, "reason": f"{reason} count={count}"})
        return count

    def get(self, session_id: str) -> SessionRecord | None:
        return self._repo.get(session_id)

    def list_active(self, user_id: str) -> list[SessionRecord]:
        return self._repo.list_active(user_id, self._now())

    def count_active(self, user_id: str) -> int:
        return self._repo.count_active(user_id, self._now())

    def raise_flags(self, session_id: str, flags: set[str]) -> bool:
        return self._repo.raise_flags(session_id, flags)

    def clear_security_flags(self, session_id: str) -> bool:
        cleared = self._repo.clear_flags(session_id)
        if cleared:
            LOGGER.info("session_flags_cleared", extra={"session_id": session_id})
        return cleared

    def is_fresh(self, session: SessionRecord) -> bool:
        return self._now() - session.created_at <= self._config.fresh_auth_seconds

    def terminate_inactive(self, now: int | None = None) -> int:
        current = self._now() if now is None else now
        return self._repo.terminate_idle(
            idle_before=current - self._config.inactivity_seconds,
            now=current,
        )

    def purge_old(self, now: int | None = None) -> int:
        current = self._now() if now is None else now
        return self._repo.purge(older_than=current - self._config.retention_days * 24 * 60 * 60)

    def stats(self) -> dict[str, int]:
        return self._repo.stats(self._now())
