"""Shared API error types and helpers."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from fastapi import HTTPException


class ApiErrorCode(StrEnum):
    """Machine-readable API error codes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTH_MISSING_TOKEN = "AUTH_MISSING_TOKEN"
    AUTH_TOKEN_INVALID = "AUTH_TOKEN_INVALID"
    AUTH_INVALID_CREDENTIALS = "AUTH_INVALID_CREDENTIALS"
    AUTH_ACCOUNT_LOCKED = "AUTH_ACCOUNT_LOCKED"
    AUTH_ACCOUNT_INACTIVE = "AUTH_ACCOUNT_INACTIVE"
    AUTH_FRESH_AUTH_REQUIRED = "AUTH_FRESH_AUTH_REQUIRED"
    AUTH_RATE_LIMITED = "AUTH_RATE_LIMITED"
    OTP_NO_VALID_CHALLENGE = "OTP_NO_VALID_CHALLENGE"
    OTP_EXPIRED = "OTP_EXPIRED"
    OTP_ATTEMPTS_EXCEEDED = "OTP_ATTEMPTS_EXCEEDED"
    OTP_MISMATCH = "OTP_MISMATCH"
    OTP_DELIVERY_FAILED = "OTP_DELIVERY_FAILED"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    ROLE_NOT_FOUND = "ROLE_NOT_FOUND"
    ROLE_ALREADY_EXISTS = "ROLE_ALREADY_EXISTS"
    ROLE_PROTECTED = "ROLE_PROTECTED"
    ROLE_IN_USE = "ROLE_IN_USE"
    IDENTITY_NOT_FOUND = "IDENTITY_NOT_FOUND"
    REQUEST_TOO_LARGE = "REQUEST_TOO_LARGE"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"


class ApiError(HTTPException):
    """HTTP exception carrying stable API error envelope."""

    def __init__(
        self,
        *,
        status_code: int,
        error_code: ApiErrorCode,
        message: str,
        extra: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Build an HTTP exception with standard detail structure."""
        detail: dict[str, Any] = {"error_code": str(error_code), "message": message}
        detail.update(extra or {})
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code
        self.message = message


def to_error_payload(detail: Any, status_code: int) -> dict[str, Any]:
    """Normalize HTTP exception detail into the failure envelope."""
    if isinstance(detail, dict):
        payload: dict[str, Any] = {
            key: value
            for key, value in detail.items()
            if key not in {"error_code", "message", "detail"}
        }
        payload.update(
            {
                "success": False,
                "error_code": str(detail.get("error_code") or f"HTTP_{status_code}"),
                "message": str(detail.get("message") or detail.get("detail") or "HTTP error"),
            }
        )
        return payload
    return {
        "success": False,
        "error_code": f"HTTP_{status_code}",
        "message": str(detail or "HTTP error"),
    }
