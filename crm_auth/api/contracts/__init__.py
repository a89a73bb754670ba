"""Public API response contracts."""

from crm_auth.api.contracts.models import (
    ApiErrorResponse,
    ApiResponse,
    DeviceInfoResponse,
    HealthResponse,
    LoginCompleteData,
    LoginStartData,
    MeData,
    SessionSummary,
    TokenPairData,
    UserSummary,
)

__all__ = [
    "ApiErrorResponse",
    "ApiResponse",
    "DeviceInfoResponse",
    "HealthResponse",
    "LoginCompleteData",
    "LoginStartData",
    "MeData",
    "SessionSummary",
    "TokenPairData",
    "UserSummary",
]
