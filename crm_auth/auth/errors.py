"""Expected authentication and authorization failures."""

from __future__ import annotations

from typing import Any

from crm_auth.api.errors import ApiError, ApiErrorCode


class InvalidCredentialsError(ApiError):
    def __init__(self, message: str = "Invalid email or password") -> None:
        super().__init__(
            status_code=401,
            error_code=ApiErrorCode.AUTH_INVALID_CREDENTIALS,
            message=message,
        )


class AccountLockedError(ApiError):
    """Identity is locked after repeated password failures."""

    def __init__(self, lock_until: int | None = None) -> None:
        extra = {"lock_until": lock_until} if lock_until else None
        super().__init__(
            status_code=423,
            error_code=ApiErrorCode.AUTH_ACCOUNT_LOCKED,
            message="Account is temporarily locked due to multiple failed login attempts",
            extra=extra,
        )
        self.lock_until = lock_until


class AccountInactiveError(ApiError):
    def __init__(self, message: str = "Account is not active") -> None:
        super().__init__(
            status_code=401,
            error_code=ApiErrorCode.AUTH_ACCOUNT_INACTIVE,
            message=message,
        )


class NoValidChallengeError(ApiError):
    def __init__(self) -> None:
        super().__init__(
            status_code=401,
            error_code=ApiErrorCode.OTP_NO_VALID_CHALLENGE,
            message="No valid verification code found. Please request a new one.",
        )


class ChallengeExpiredError(ApiError):
    def __init__(self) -> None:
        super().__init__(
            status_code=401,
            error_code=ApiErrorCode.OTP_EXPIRED,
            message="Verification code has expired. Please request a new one.",
        )


class AttemptsExceededError(ApiError):
    def __init__(self) -> None:
        super().__init__(
            status_code=401,
            error_code=ApiErrorCode.OTP_ATTEMPTS_EXCEEDED,
            message="Maximum verification attempts exceeded. Please request a new code.",
        )


class ChallengeMismatchError(ApiError):
    """Wrong code; reports how many tries the challenge has left."""

    def __init__(self, attempts_remaining: int) -> None:
        super().__init__(
            status_code=401,
            error_code=ApiErrorCode.OTP_MISMATCH,
            message=f"Invalid verification code. {attempts_remaining} attempts remaining.",
            extra={"attempts_remaining": attempts_remaining},
        )
        self.attempts_remaining = attempts_remaining


class OTPDeliveryError(ApiError):
    def __init__(self) -> None:
        super().__init__(
            status_code=500,
            error_code=ApiErrorCode.OTP_DELIVERY_FAILED,
            message="Failed to send verification code. Please try again.",
        )


class RateLimitedError(ApiError):
    """Caller exceeded a fixed-window request limit."""

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        super().__init__(
            status_code=429,
            error_code=ApiErrorCode.AUTH_RATE_LIMITED,
            message=message or f"Too many requests. Retry after {retry_after} seconds.",
            extra={"retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
        self.retry_after = retry_after


class MissingTokenError(ApiError):
    def __init__(self) -> None:
        super().__init__(
            status_code=401,
            error_code=ApiErrorCode.AUTH_MISSING_TOKEN,
            message="Access token required",
        )


class InvalidTokenError(ApiError):
    def __init__(self, message: str = "Invalid token") -> None:
        super().__init__(
            status_code=401,
            error_code=ApiErrorCode.AUTH_TOKEN_INVALID,
            message=message,
        )


class SessionNotFoundError(ApiError):
    def __init__(self, message: str = "Session not found or inactive", status_code: int = 401) -> None:
        super().__init__(
            status_code=status_code,
            error_code=ApiErrorCode.SESSION_NOT_FOUND,
            message=message,
        )


class SessionExpiredError(ApiError):
    def __init__(self) -> None:
        super().__init__(
            status_code=401,
            error_code=ApiErrorCode.SESSION_EXPIRED,
            message="Session expired",
        )


class FreshAuthRequiredError(ApiError):
    def __init__(self) -> None:
        super().__init__(
            status_code=401,
            error_code=ApiErrorCode.AUTH_FRESH_AUTH_REQUIRED,
            message="Recent authentication required for this operation",
        )


class InsufficientPermissionError(ApiError):
    def __init__(self, message: str = "Insufficient permissions") -> None:
        super().__init__(
            status_code=403,
            error_code=ApiErrorCode.PERMISSION_DENIED,
            message=message,
        )


class RoleNotFoundError(ApiError):
    def __init__(self, role_name: str) -> None:
        super().__init__(
            status_code=404,
            error_code=ApiErrorCode.ROLE_NOT_FOUND,
            message=f"Role '{role_name}' not found",
        )
        self.role_name = role_name


class IdentityNotFoundError(ApiError):
    def __init__(self) -> None:
        super().__init__(
            status_code=404,
            error_code=ApiErrorCode.IDENTITY_NOT_FOUND,
            message="User not found",
        )


class ValidationFailedError(ApiError):
    """Input rejected by domain validation rather than schema parsing."""

    def __init__(self, message: str, errors: list[Any] | None = None) -> None:
        super().__init__(
            status_code=400,
            error_code=ApiErrorCode.VALIDATION_ERROR,
            message=message,
            extra={"errors": errors} if errors else None,
        )


class RoleAlreadyExistsError(ApiError):
    def __init__(self, role_name: str) -> None:
        super().__init__(
            status_code=409,
            error_code=ApiErrorCode.ROLE_ALREADY_EXISTS,
            message=f"Role '{role_name}' already exists",
        )


class RoleProtectedError(ApiError):
    """System role structure or deletion request refused."""

    def __init__(self, message: str, status_code: int = 403) -> None:
        super().__init__(
            status_code=status_code,
            error_code=ApiErrorCode.ROLE_PROTECTED,
            message=message,
        )


class RoleInUseError(ApiError):
    def __init__(self, role_name: str, assigned: int) -> None:
        super().__init__(
            status_code=400,
            error_code=ApiErrorCode.ROLE_IN_USE,
            message=f"Cannot delete role '{role_name}'. {assigned} users are assigned to this role.",
        )
