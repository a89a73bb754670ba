"""Pydantic API response models used in OpenAPI contracts."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class ApiErrorResponse(BaseModel):
    """Stable error envelope for API responses."""

    success: Literal[False] = False
    error_code: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error message")
    errors: list[Any] | None = None
    retry_after: int | None = None
    attempts_remaining: int | None = None
    lock_until: int | None = None

    def to_content(self) -> dict[str, Any]:
        """Dump the envelope without unset optional fields."""
        return self.model_dump(exclude_none=True)


class ApiResponse(BaseModel):
    """Success envelope shared by every endpoint."""

    success: Literal[True] = True
    message: str = ""
    data: Any = None


class HealthResponse(BaseModel):
    """Health check response payload."""

    status: Literal["ok"]
    store: Literal["mongo", "file"]


class UserSummary(BaseModel):
    """Public projection of an identity."""

    user_id: str
    email: str
    name: str
    role: str
    status: str
    last_login_at: int | None = None


class DeviceInfoResponse(BaseModel):
    browser: str
    os: str
    device: str
    is_mobile: bool


class LoginStartData(BaseModel):
    """Step-one login result."""

    email: str
    otp_sent: bool
    expires_in: int = Field(description="Code validity in minutes")
    device_info: DeviceInfoResponse


class TokenPairData(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: str


class LoginCompleteData(BaseModel):
    """Step-two login result."""

    user: UserSummary
    tokens: TokenPairData
    session_id: str
    login_info: dict[str, Any]


class SessionSummary(BaseModel):
    session_id: str
    ip_address: str
    device_info: DeviceInfoResponse
    last_activity_at: int
    created_at: int
    is_current: bool
    security_flags: dict[str, bool]


class MeData(BaseModel):
    user: UserSummary
    session: dict[str, Any]
    permissions: list[str]
