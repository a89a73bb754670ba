"""Authentication service orchestrating the two-step login and session surface."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable

from crm_auth.auth.credentials import CredentialVerifier
from crm_auth.auth.delivery import OTPDelivery
from crm_auth.auth.errors import (
    AccountInactiveError,
    AccountLockedError,
    IdentityNotFoundError,
    InsufficientPermissionError,
    InvalidCredentialsError,
    NoValidChallengeError,
    OTPDeliveryError,
    RateLimitedError,
    SessionNotFoundError,
)
from crm_auth.auth.models import Identity, Principal, SessionRecord
from crm_auth.auth.otp import OTPChallengeService
from crm_auth.auth.rate_limiter import RateLimiter, limiter_key
from crm_auth.auth.repository import IdentityRepository
from crm_auth.auth.sessions import SessionManager, parse_device_info
from crm_auth.core.config import AuthConfig, RateLimitConfig
from crm_auth.core.security import hash_password, verify_password
from crm_auth.roles.resolver import PermissionResolver

LOGGER = logging.getLogger(__name__)

LOGIN_PURPOSE = "login"

# Verified against for unknown emails to match the cost of a real check.
_UNKNOWN_IDENTITY_HASH = hash_password(uuid.uuid4().hex)


class AuthService:
    """Authentication domain service."""

    def __init__(
        self,
        *,
        identities: IdentityRepository,
        credentials: CredentialVerifier,
        otp: OTPChallengeService,
        delivery: OTPDelivery,
        sessions: SessionManager,
        resolver: PermissionResolver,
        rate_limiter: RateLimiter,
        rate_limits: RateLimitConfig,
        config: AuthConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._identities = identities
        self._credentials = credentials
        self._otp = otp
        self._delivery = delivery
        self._sessions = sessions
        self._resolver = resolver
        self._limiter = rate_limiter
        self._rules = rate_limits
        self._config = config
        self._clock = clock

    def bootstrap_admin_user(self) -> None:
        """Ensure the bootstrap top-role identity exists from environment values."""
        if not self._config.admin_email or not self._config.admin_password:
            return
        if self._identities.get_by_email(self._config.admin_email) is not None:
            return
        now = int(self._clock())
        self._identities.upsert(
            Identity(
                user_id=uuid.uuid4().hex,
                email=self._config.admin_email,
                name="Administrator",
                password_hash=hash_password(self._config.admin_password),
                role=self._config.top_role,
                status="active",
                created_at=now,
                updated_at=now,
            )
        )
        LOGGER.info("bootstrap_admin_created", extra={"role": self._config.top_role})

    def begin_login(self, email: str, password: str, *, client_ip: str, user_agent: str) -> dict[str, Any]:
        """Step one: check the password and send a one-time code."""
        normalized = email.strip().lower()
        self._limiter.check(limiter_key(self._rules.login, client_ip, normalized), self._rules.login)

        identity = self._identities.get_by_email(normalized)
        if identity is None:
            verify_password(password, _UNKNOWN_IDENTITY_HASH)
            LOGGER.info("login_unknown_email", extra={"client_ip": client_ip})
            raise InvalidCredentialsError()
        identity = self._credentials.verify(identity, password)

        ttl_minutes = self._otp.ttl_seconds // 60
        self._send_code(identity, client_ip=client_ip, user_agent=user_agent, ttl_minutes=ttl_minutes)
        return {
            "email": identity.email,
            "otp_sent": True,
            "expires_in": ttl_minutes,
            "device_info": parse_device_info(user_agent).model_dump(),
        }

    def _send_code(self, identity: Identity, *, client_ip: str, user_agent: str, ttl_minutes: int) -> None:
        issued = self._otp.issue(identity, LOGIN_PURPOSE, client_ip, user_agent)
        delivered = self._delivery.send_code(
            to_email=identity.email,
            name=identity.name,
            code=issued.code,
            purpose=LOGIN_PURPOSE,
            ttl_minutes=ttl_minutes,
        )
        if not delivered:
            raise OTPDeliveryError()

    def complete_login(self, email: str, code: str, *, client_ip: str, user_agent: str) -> dict[str, Any]:
        """Step two: redeem the code and open a session."""
        normalized = email.strip().lower()
        self._limiter.check(limiter_key(self._rules.otp_verify, client_ip, normalized), self._rules.otp_verify)

        identity = self._identities.get_by_email(normalized)
        if identity is None:
            raise NoValidChallengeError()
        if identity.status != "active":
            raise AccountInactiveError()
        if identity.is_locked(int(self._clock())):
            raise AccountLockedError(identity.lock_until)

        self._otp.verify(identity, LOGIN_PURPOSE, code)
        device_info = parse_device_info(user_agent)
        issued = self._sessions.create(identity, client_ip, user_agent, device_info)
        self._limiter.reset(limiter_key(self._rules.login, client_ip, normalized))
        LOGGER.info(
            "login_completed",
            extra={"user_id": identity.user_id, "session_id": issued.session_id, "client_ip": client_ip},
        )
        return {
            "user": identity.summary(),
            "tokens": issued.tokens(),
            "session_id": issued.session_id,
            "login_info": {
                "login_time": int(self._clock()),
                "ip_address": client_ip,
                "device_info": device_info.model_dump(),
                "security_flags": sorted(issued.security_flags),
            },
        }

    def resend_otp(self, email: str, *, client_ip: str, user_agent: str) -> dict[str, Any]:
        """Send a fresh code. Unknown or inactive emails get the same answer."""
        normalized = email.strip().lower()
        self._limiter.check(limiter_key(self._rules.otp_resend, client_ip, normalized), self._rules.otp_resend)

        ttl_minutes = self._otp.ttl_seconds // 60
        identity = self._identities.get_by_email(normalized)
        if identity is not None and identity.status == "active" and not identity.is_locked(int(self._clock())):
            self._send_code(identity, client_ip=client_ip, user_agent=user_agent, ttl_minutes=ttl_minutes)
        else:
            LOGGER.info("otp_resend_ignored", extra={"client_ip": client_ip})
        return {"email": normalized, "otp_sent": True, "expires_in": ttl_minutes}

    def refresh(self, refresh_token: str) -> dict[str, Any]:
        return self._sessions.refresh(refresh_token).tokens()

    def logout(self, principal: Principal) -> bool:
        return self._sessions.terminate(principal.session.session_id, "logout", principal.user_id)

    def logout_all(self, principal: Principal) -> int:
        return self._sessions.terminate_all(principal.user_id, "logout", principal.user_id)

    def change_password(self, principal: Principal, current_password: str, new_password: str) -> int:
        """Replace the password and end every other session of the caller.

        Hitting the limit flags the calling session with ``multiple_failed_attempts``.
        """
        rule = self._rules.password_change
        key = limiter_key(rule, principal.session.ip_address, principal.user_id)
        try:
            self._limiter.check(key, rule)
        except RateLimitedError:
            self._sessions.raise_flags(principal.session.session_id, {"multiple_failed_attempts"})
            LOGGER.warning(
                "password_change_rate_limited",
                extra={"user_id": principal.user_id, "session_id": principal.session.session_id},
            )
            raise
        self._credentials.verify(principal.identity, current_password)
        self._limiter.reset(key)
        self._identities.set_password_hash(principal.user_id, hash_password(new_password), int(self._clock()))
        terminated = self._sessions.terminate_all(
            principal.user_id,
            "password_change",
            principal.user_id,
            except_session_id=principal.session.session_id,
        )
        LOGGER.info("password_changed", extra={"user_id": principal.user_id})
        return terminated

    def me(self, principal: Principal) -> dict[str, Any]:
        session = principal.session
        return {
            "user": principal.identity.summary(),
            "session": {
                "session_id": session.session_id,
                "created_at": session.created_at,
                "last_activity_at": session.last_activity_at,
                "ip_address": session.ip_address,
                "device_info": session.device_info.model_dump(),
                "security_flags": session.security_flags.model_dump(),
            },
            "permissions": principal.permissions.as_list(),
            "dashboard_route": principal.permissions.dashboard_route,
        }

    def list_sessions(self, principal: Principal) -> list[dict[str, Any]]:
        return [
            {
                "session_id": record.session_id,
                "ip_address": record.ip_address,
                "device_info": record.device_info.model_dump(),
                "last_activity_at": record.last_activity_at,
                "created_at": record.created_at,
                "is_current": record.session_id == principal.session.session_id,
                "security_flags": record.security_flags.model_dump(),
            }
            for record in self._sessions.list_active(principal.user_id)
        ]

    def _require_manage(self, principal: Principal, target: Identity) -> None:
        if not self._resolver.can_manage(principal.role, target.role):
            raise InsufficientPermissionError(f"Cannot manage users with role '{target.role}'")

    def _active_session(self, session_id: str) -> SessionRecord:
        record = self._sessions.get(session_id)
        if record is None or not record.is_active:
            raise SessionNotFoundError(status_code=404)
        return record

    def terminate_session(self, principal: Principal, session_id: str) -> None:
        """End one session owned by the caller or by someone the caller manages."""
        record = self._active_session(session_id)
        if record.user_id == principal.user_id:
            reason = "user_action"
        else:
            owner = self._identities.get(record.user_id)
            if owner is None:
                raise SessionNotFoundError(status_code=404)
            self._require_manage(principal, owner)
            reason = "admin_action"
        if not self._sessions.terminate(session_id, reason, principal.user_id):
            raise SessionNotFoundError(status_code=404)

    def _managed_identity(self, principal: Principal, user_id: str) -> Identity:
        target = self._identities.get(user_id)
        if target is None:
            raise IdentityNotFoundError()
        self._require_manage(principal, target)
        return target

    def unlock_identity(self, principal: Principal, user_id: str) -> None:
        target = self._managed_identity(principal, user_id)
        self._credentials.unlock(target.user_id)

    def revoke_sessions(self, principal: Principal, user_id: str) -> int:
        target = self._managed_identity(principal, user_id)
        return self._sessions.terminate_all(target.user_id, "admin_action", principal.user_id)

    def clear_session_flags(self, principal: Principal, session_id: str) -> None:
        record = self._sessions.get(session_id)
        if record is None:
            raise SessionNotFoundError(status_code=404)
        owner = self._identities.get(record.user_id)
        if owner is None:
            raise SessionNotFoundError(status_code=404)
        self._require_manage(principal, owner)
        self._sessions.clear_security_flags(session_id)
