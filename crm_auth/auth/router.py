"""Authentication API router."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from crm_auth.api.contracts import ApiErrorResponse, ApiResponse
from crm_auth.auth.cleanup import CleanupService
from crm_auth.auth.dependencies import get_principal, require_fresh_auth, require_permission
from crm_auth.auth.middleware import client_ip
from crm_auth.auth.models import (
    ChangePasswordRequest,
    LoginRequest,
    Principal,
    RefreshRequest,
    ResendOTPRequest,
    VerifyOTPRequest,
)
from crm_auth.auth.service import AuthService
from crm_auth.auth.sessions import SessionManager

_ERRORS = {
    400: {"model": ApiErrorResponse},
    401: {"model": ApiErrorResponse},
    403: {"model": ApiErrorResponse},
}


def create_auth_router(
    service: AuthService,
    sessions: SessionManager,
    cleanup: CleanupService,
) -> APIRouter:
    """Build the two-step login, session and admin routes under ``/api/auth``."""
    router = APIRouter(prefix="/api/auth", tags=["auth"])
    fresh_auth = require_fresh_auth(sessions)

    @router.post(
        "/login",
        response_model=ApiResponse,
        responses={**_ERRORS, 423: {"model": ApiErrorResponse}, 429: {"model": ApiErrorResponse}},
    )
    def login(req: LoginRequest, request: Request) -> ApiResponse:
        """Check the password and send a verification code."""
        data = service.begin_login(
            req.email,
            req.password,
            client_ip=client_ip(request),
            user_agent=request.headers.get("user-agent", ""),
        )
        return ApiResponse(message="Verification code sent to your email", data=data)

    @router.post(
        "/verify-otp",
        response_model=ApiResponse,
        responses={**_ERRORS, 423: {"model": ApiErrorResponse}, 429: {"model": ApiErrorResponse}},
    )
    def verify_otp(req: VerifyOTPRequest, request: Request) -> ApiResponse:
        """Redeem the verification code and open a session."""
        data = service.complete_login(
            req.email,
            req.otp,
            client_ip=client_ip(request),
            user_agent=request.headers.get("user-agent", ""),
        )
        return ApiResponse(message="Login successful", data=data)

    @router.post("/resend-otp", response_model=ApiResponse, responses={429: {"model": ApiErrorResponse}})
    def resend_otp(req: ResendOTPRequest, request: Request) -> ApiResponse:
        data = service.resend_otp(
            req.email,
            client_ip=client_ip(request),
            user_agent=request.headers.get("user-agent", ""),
        )
        return ApiResponse(message="If the account exists, a new verification code has been sent", data=data)

    @router.post("/refresh-token", response_model=ApiResponse, responses=_ERRORS)
    def refresh_token(req: RefreshRequest) -> ApiResponse:
        """Issue a new access token for the session behind the refresh token."""
        return ApiResponse(message="Token refreshed", data=service.refresh(req.refresh_token))

    @router.post("/logout", response_model=ApiResponse, responses=_ERRORS)
    def logout(principal: Principal = Depends(get_principal)) -> ApiResponse:
        service.logout(principal)
        return ApiResponse(message="Logged out successfully")

    @router.post("/logout-all", response_model=ApiResponse, responses=_ERRORS)
    def logout_all(principal: Principal = Depends(fresh_auth)) -> ApiResponse:
        """End every session of the caller, including this one."""
        count = service.logout_all(principal)
        return ApiResponse(message="Logged out from all devices", data={"terminated_sessions": count})

    @router.post(
        "/change-password",
        response_model=ApiResponse,
        responses={**_ERRORS, 423: {"model": ApiErrorResponse}, 429: {"model": ApiErrorResponse}},
    )
    def change_password(
        req: ChangePasswordRequest,
        principal: Principal = Depends(get_principal),
    ) -> ApiResponse:
        count = service.change_password(principal, req.current_password, req.new_password)
        return ApiResponse(message="Password changed", data={"terminated_sessions": count})

    @router.get("/me", response_model=ApiResponse, responses=_ERRORS)
    def me(principal: Principal = Depends(get_principal)) -> ApiResponse:
        return ApiResponse(data=service.me(principal))

    @router.get("/sessions", response_model=ApiResponse, responses=_ERRORS)
    def list_sessions(principal: Principal = Depends(get_principal)) -> ApiResponse:
        return ApiResponse(data={"sessions": service.list_sessions(principal)})

    @router.delete("/sessions/{session_id}", response_model=ApiResponse, responses={**_ERRORS, 404: {"model": ApiErrorResponse}})
    def delete_session(session_id: str, principal: Principal = Depends(get_principal)) -> ApiResponse:
        service.terminate_session(principal, session_id)
        return ApiResponse(message="Session terminated")

    @router.get("/admin/cleanup-stats", response_model=ApiResponse, responses=_ERRORS)
    def cleanup_stats(_: Principal = Depends(require_permission("settings", "read"))) -> ApiResponse:
        return ApiResponse(data=cleanup.stats())

    @router.post(
        "/admin/cleanup",
        response_model=ApiResponse,
        responses=_ERRORS,
        dependencies=[Depends(fresh_auth)],
    )
    def run_cleanup(_: Principal = Depends(require_permission("settings", "update"))) -> ApiResponse:
        """Run every cleanup job now."""
        return ApiResponse(message="Cleanup completed", data=cleanup.run_once())

    @router.post("/admin/identities/{user_id}/unlock", response_model=ApiResponse, responses={**_ERRORS, 404: {"model": ApiErrorResponse}})
    def unlock_identity(
        user_id: str,
        principal: Principal = Depends(require_permission("user_management", "update")),
    ) -> ApiResponse:
        service.unlock_identity(principal, user_id)
        return ApiResponse(message="Account unlocked")

    @router.post(
        "/admin/identities/{user_id}/revoke-sessions",
        response_model=ApiResponse,
        responses={**_ERRORS, 404: {"model": ApiErrorResponse}},
    )
    def revoke_sessions(
        user_id: str,
        principal: Principal = Depends(require_permission("user_management", "update")),
    ) -> ApiResponse:
        count = service.revoke_sessions(principal, user_id)
        return ApiResponse(message="Sessions revoked", data={"terminated_sessions": count})

    @router.post(
        "/admin/sessions/{session_id}/clear-flags",
        response_model=ApiResponse,
        responses={**_ERRORS, 404: {"model": ApiErrorResponse}},
    )
    def clear_flags(
        session_id: str,
        principal: Principal = Depends(require_permission("user_management", "update")),
    ) -> ApiResponse:
        service.clear_session_flags(principal, session_id)
        return ApiResponse(message="Security flags cleared")

    return router
