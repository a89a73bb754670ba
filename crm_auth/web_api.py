"""FastAPI application factory for the CRM auth service.

Run with ``uvicorn crm_auth.web_api:create_app --factory``.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from crm_auth.api.contracts import HealthResponse
from crm_auth.api.http_setup import register_exception_handlers, register_http_middleware
from crm_auth.auth.anomaly import AnomalyDetector
from crm_auth.auth.cleanup import CleanupService
from crm_auth.auth.credentials import CredentialVerifier
from crm_auth.auth.delivery import OTPDelivery, build_otp_delivery
from crm_auth.auth.middleware import create_auth_middleware
from crm_auth.auth.otp import OTPChallengeService
from crm_auth.auth.rate_limiter import RateLimiter
from crm_auth.auth.repository import IdentityRepository, OTPRepository, SessionRepository
from crm_auth.auth.router import create_auth_router
from crm_auth.auth.service import AuthService
from crm_auth.auth.sessions import SessionManager
from crm_auth.core.config import AppConfig
from crm_auth.core.logging import setup_logging
from crm_auth.core.mongo_migrations import apply_mongo_migrations
from crm_auth.core.store import connect_mongo_database
from crm_auth.roles.cache import PermissionCache
from crm_auth.roles.repository import RoleRepository
from crm_auth.roles.resolver import PermissionResolver
from crm_auth.roles.router import create_roles_router
from crm_auth.roles.service import RoleService

LOGGER = logging.getLogger(__name__)


def create_app(
    config: AppConfig | None = None,
    *,
    clock: Callable[[], float] = time.time,
    delivery: OTPDelivery | None = None,
) -> FastAPI:
    if config is None:
        load_dotenv()
        config = AppConfig.from_env()
        setup_logging(config.logging.level)

    app = FastAPI(title="CRM Auth API", version="1.0.0")

    runtime_dir = Path(config.store.runtime_dir).resolve()
    runtime_dir.mkdir(parents=True, exist_ok=True)
    database = connect_mongo_database(config.store)
    apply_mongo_migrations(database)

    identities = IdentityRepository(runtime_dir, database)
    role_repo = RoleRepository(runtime_dir, database)
    permission_cache = PermissionCache(config.permissions.cache_ttl_seconds, clock=clock)
    resolver = PermissionResolver(role_repo, permission_cache, top_role=config.auth.top_role)
    role_service = RoleService(role_repo, identities, resolver, clock=clock)
    role_service.initialize_default_roles()

    sessions = SessionManager(
        SessionRepository(runtime_dir, database),
        identities,
        resolver,
        config.auth,
        config.session,
        clock=clock,
    )
    otp = OTPChallengeService(
        OTPRepository(runtime_dir, database),
        config.otp,
        environment=config.environment,
        clock=clock,
    )
    rate_limiter = RateLimiter(clock=clock)
    auth_service = AuthService(
        identities=identities,
        credentials=CredentialVerifier(identities, config.lockout, clock=clock),
        otp=otp,
        delivery=delivery or build_otp_delivery(config.smtp),
        sessions=sessions,
        resolver=resolver,
        rate_limiter=rate_limiter,
        rate_limits=config.rate_limits,
        config=config.auth,
        clock=clock,
    )
    auth_service.bootstrap_admin_user()
    cleanup = CleanupService(
        sessions=sessions,
        otp=otp,
        rate_limiter=rate_limiter,
        permission_cache=permission_cache,
        config=config.cleanup,
        clock=clock,
    )

    app.include_router(create_auth_router(auth_service, sessions, cleanup))
    app.include_router(create_roles_router(role_service, resolver))

    @app.get("/api/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(status="ok", store="mongo" if database is not None else "file")

    app.middleware("http")(create_auth_middleware(sessions, resolver, AnomalyDetector(sessions)))
    register_http_middleware(app, config=config, logger=LOGGER)
    register_exception_handlers(app, logger=LOGGER)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.security.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )

    @app.on_event("startup")
    async def start_cleanup() -> None:
        await cleanup.start()

    @app.on_event("shutdown")
    async def stop_cleanup() -> None:
        await cleanup.stop()

    app.state.auth_service = auth_service
    app.state.sessions = sessions
    app.state.identities = identities
    app.state.permission_cache = permission_cache
    return app
