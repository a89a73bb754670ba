"""Pydantic models for authentication domain."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field

from crm_auth.roles.models import PermissionSet

IdentityStatus = Literal["active", "inactive", "suspended"]
OTPPurpose = Literal["login", "password_reset", "email_verification"]
TerminationReason = Literal[
    "logout",
    "admin_action",
    "security_violation",
    "inactivity",
    "token_refresh",
    "password_change",
    "user_action",
]


class Identity(BaseModel):
    """Persisted user identity."""

    user_id: str
    email: str
    name: str = ""
    password_hash: str
    role: str
    status: IdentityStatus = "active"
    failed_attempts: int = 0
    lock_until: int | None = None
    last_login_at: int | None = None
    permissions: dict[str, dict[str, bool]] | None = None
    created_at: int = 0
    updated_at: int = 0

    def is_locked(self, now: int) -> bool:
        return self.lock_until is not None and self.lock_until > now

    def summary(self) -> dict[str, Any]:
        """Public projection without secrets or counters."""
        return {
            "user_id": self.user_id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "status": self.status,
            "last_login_at": self.last_login_at,
        }


class OTPChallengeRecord(BaseModel):
    """Persisted one-time code challenge. Only the code digest is stored."""

    challenge_id: str
    user_id: str
    purpose: OTPPurpose = "login"
    code_hash: str
    expires_at: int
    used: bool = False
    attempts: int = 0
    max_attempts: int = 3
    ip_address: str = ""
    user_agent: str = ""
    created_at: int


class DeviceInfo(BaseModel):
    browser: str = "Unknown"
    os: str = "Unknown"
    device: str = "Unknown"
    is_mobile: bool = False


class SecurityFlags(BaseModel):
    suspicious_activity: bool = False
    multiple_failed_attempts: bool = False
    unusual_location: bool = False
    concurrent_sessions: bool = False

    def raised(self) -> set[str]:
        return {name for name, value in self.model_dump().items() if value}


class SessionRecord(BaseModel):
    """Server-side session bound to one access and one refresh token id."""

    session_id: str
    user_id: str
    access_jti: str
    refresh_jti: str
    access_expires_at: int
    refresh_expires_at: int
    is_active: bool = True
    ip_address: str = ""
    user_agent: str = ""
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)
    login_method: Literal["email_otp"] = "email_otp"
    created_at: int
    last_activity_at: int
    terminated_at: int | None = None
    terminated_by: str | None = None
    termination_reason: TerminationReason | None = None
    security_flags: SecurityFlags = Field(default_factory=SecurityFlags)

    def is_valid(self, now: int) -> bool:
        return self.is_active and now < self.access_expires_at and self.terminated_at is None


class LoginRequest(BaseModel):
    """Login step-one payload."""

    email: str = Field(min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(min_length=1, max_length=256)


class VerifyOTPRequest(BaseModel):
    """Login step-two payload."""

    email: str = Field(min_length=3, max_length=254)
    otp: str = Field(pattern=r"^\d{4,10}$")


class ResendOTPRequest(BaseModel):
    email: str = Field(min_length=3, max_length=254)


class RefreshRequest(BaseModel):
    """Refresh request payload."""

    refresh_token: str = Field(min_length=1)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=8, max_length=256)


@dataclass(frozen=True)
class IssuedChallenge:
    """Freshly issued code. The plaintext exists only here, for delivery."""

    challenge_id: str
    code: str
    expires_at: int


@dataclass(frozen=True)
class IssuedSession:
    session_id: str
    access_token: str
    refresh_token: str
    expires_in: int
    security_flags: set[str] = field(default_factory=set)

    def tokens(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "bearer",
            "expires_in": self.expires_in,
            "session_id": self.session_id,
        }


@dataclass(frozen=True)
class ValidatedSession:
    identity: Identity
    session: SessionRecord
    claims: dict[str, Any]


@dataclass(frozen=True)
class Principal:
    """Authenticated caller attached to ``request.state.principal``."""

    identity: Identity
    session: SessionRecord
    permissions: PermissionSet
    claims: dict[str, Any] = field(default_factory=dict)

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    @property
    def role(self) -> str:
        return self.identity.role
