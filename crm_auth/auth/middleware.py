"""HTTP middleware that enforces auth on protected API routes."""

from __future__ import annotations

import logging
from typing import Callable

from fastapi import HTTPException, Request

from crm_auth.api.errors import ApiErrorCode, to_error_payload
from crm_auth.api.http_setup import error_response
from crm_auth.auth.anomaly import AnomalyDetector
from crm_auth.auth.errors import InsufficientPermissionError, MissingTokenError, RoleNotFoundError
from crm_auth.auth.models import Principal
from crm_auth.auth.sessions import SessionManager
from crm_auth.core.store import StoreUnavailableError
from crm_auth.roles.resolver import PermissionResolver

LOGGER = logging.getLogger(__name__)

PUBLIC_PATHS = frozenset(
    {
        "/api/health",
        "/api/auth/login",
        "/api/auth/verify-otp",
        "/api/auth/resend-otp",
        "/api/auth/refresh-token",
    }
)


def extract_bearer_token(authorization: str | None) -> str:
    """Extract bearer token from authorization header value."""
    parts = (authorization or "").strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1].strip()


def client_ip(request: Request) -> str:
    return (request.client.host if request.client else "") or "unknown"


def _render(exc: HTTPException):
    return error_response(
        exc.status_code,
        to_error_payload(exc.detail, exc.status_code),
        headers=getattr(exc, "headers", None),
    )


def create_auth_middleware(
    sessions: SessionManager,
    resolver: PermissionResolver,
    anomaly: AnomalyDetector,
) -> Callable:
    """Create middleware that validates the session behind every protected request."""

    async def auth_middleware(request: Request, call_next: Callable):
        """Attach ``request.state.principal`` or answer with the failure envelope."""
        path = request.url.path
        if not path.startswith("/api/") or path in PUBLIC_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        token = extract_bearer_token(request.headers.get("authorization"))
        if not token:
            return _render(MissingTokenError())

        ip_address = client_ip(request)
        user_agent = request.headers.get("user-agent", "")
        try:
            validated = sessions.validate(token)
            anomaly.inspect(validated.session, ip_address, user_agent)
            try:
                permissions = resolver.resolve_identity(validated.identity)
            except RoleNotFoundError:
                LOGGER.warning(
                    "principal_role_unresolved",
                    extra={"user_id": validated.identity.user_id, "role": validated.identity.role},
                )
                return _render(InsufficientPermissionError("Role is not active"))
        except HTTPException as exc:
            return _render(exc)
        except StoreUnavailableError:
            LOGGER.exception("auth_store_unavailable", extra={"path": path, "method": request.method})
            return error_response(
                500,
                {"error_code": ApiErrorCode.INTERNAL_SERVER_ERROR, "message": "Internal server error"},
            )

        request.state.principal = Principal(
            identity=validated.identity,
            session=validated.session,
            permissions=permissions,
            claims=validated.claims,
        )
        return await call_next(request)

    return auth_middleware
