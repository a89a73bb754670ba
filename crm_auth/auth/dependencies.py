"""FastAPI dependencies guarding authenticated routes."""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, Request

from crm_auth.auth.errors import FreshAuthRequiredError, InsufficientPermissionError, MissingTokenError
from crm_auth.auth.models import Principal
from crm_auth.auth.sessions import SessionManager


def get_principal(request: Request) -> Principal:
    """Principal attached by the auth middleware."""
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise MissingTokenError()
    return principal


def require_permission(module: str, action: str | None = None) -> Callable[..., Principal]:
    """Dependency that admits callers whose resolved permissions allow ``module[:action]``."""

    def _guard(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.permissions.allows(module, action):
            needed = f"{module}:{action}" if action else module
            raise InsufficientPermissionError(f"Missing permission {needed}")
        return principal

    return _guard


def require_fresh_auth(sessions: SessionManager) -> Callable[..., Principal]:
    """Dependency that admits sessions opened within the fresh-auth window."""

    def _guard(principal: Principal = Depends(get_principal)) -> Principal:
        if not sessions.is_fresh(principal.session):
            raise FreshAuthRequiredError()
        return principal

    return _guard
