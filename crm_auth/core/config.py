"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass(frozen=True)
class AuthConfig:
    """Token signing and bootstrap identity configuration."""

    secret_key: str
    refresh_secret_key: str
    access_token_ttl_seconds: int
    refresh_token_ttl_seconds: int
    issuer: str
    audience: str
    top_role: str
    admin_email: str
    admin_password: str


@dataclass(frozen=True)
class LockoutConfig:
    """Failed-password lockout policy."""

    max_failed_attempts: int = 5
    lock_seconds: int = 2 * 60 * 60


@dataclass(frozen=True)
class OTPConfig:
    """Second-factor challenge policy."""

    code_length: int = 6
    ttl_seconds: int = 10 * 60
    max_attempts: int = 3
    retention_seconds: int = 24 * 60 * 60
    static_bypass_enabled: bool = False
    static_bypass_code: str = ""


@dataclass(frozen=True)
class SessionConfig:
    """Session lifecycle policy."""

    max_concurrent: int = 3
    inactivity_seconds: int = 24 * 60 * 60
    retention_days: int = 30
    fresh_auth_seconds: int = 30 * 60


@dataclass(frozen=True)
class RateLimitRule:
    """Fixed-window limit for one protected endpoint."""

    name: str
    max_attempts: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-endpoint rate limit rules."""

    login: RateLimitRule
    otp_verify: RateLimitRule
    otp_resend: RateLimitRule
    password_change: RateLimitRule


@dataclass(frozen=True)
class PermissionConfig:
    """Permission resolution cache settings."""

    cache_ttl_seconds: int = 5 * 60


@dataclass(frozen=True)
class CleanupConfig:
    """Background cleanup cadence."""

    inactive_sessions_interval_seconds: int = 30 * 60
    expired_otps_interval_seconds: int = 15 * 60
    old_sessions_interval_seconds: int = 24 * 60 * 60


@dataclass(frozen=True)
class StoreConfig:
    """Persistent store settings."""

    mongodb_uri: str
    mongodb_db: str
    timeout_ms: int
    runtime_dir: str


@dataclass(frozen=True)
class SmtpConfig:
    """Outbound mail settings for second-factor delivery."""

    host: str
    port: int
    user: str
    password: str
    from_email: str


@dataclass(frozen=True)
class LoggingConfig:
    """Structured logging configuration."""

    level: str


@dataclass(frozen=True)
class SecurityConfig:
    """API perimeter security settings."""

    cors_allowed_origins: list[str]
    request_max_bytes: int


@dataclass(frozen=True)
class AppConfig:
    """Top-level application configuration."""

    environment: str
    auth: AuthConfig
    lockout: LockoutConfig
    otp: OTPConfig
    session: SessionConfig
    rate_limits: RateLimitConfig
    permissions: PermissionConfig
    cleanup: CleanupConfig
    store: StoreConfig
    smtp: SmtpConfig
    logging: LoggingConfig
    security: SecurityConfig

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @staticmethod
    def from_env() -> "AppConfig":
        """Build app config from process environment."""
        environment = os.getenv("APP_ENV", "development").strip().lower() or "development"
        secret_key = (
            os.getenv("AUTH_SECRET_KEY", "").strip() or "dev-insecure-secret-change-me"
        )
        refresh_secret_key = (
            os.getenv("AUTH_REFRESH_SECRET_KEY", "").strip()
            or "dev-insecure-refresh-secret-change-me"
        )
        issuer = os.getenv("AUTH_ISSUER", "crm-system").strip() or "crm-system"
        audience = os.getenv("AUTH_AUDIENCE", "crm-users").strip() or "crm-users"
        top_role = os.getenv("AUTH_TOP_ROLE", "super_admin").strip() or "super_admin"
        admin_email = os.getenv("AUTH_ADMIN_EMAIL", "admin@local").strip().lower()
        admin_password = os.getenv("AUTH_ADMIN_PASSWORD", "admin123").strip()

        cors_allowed_origins = [
            origin.strip()
            for origin in os.getenv(
                "CORS_ALLOWED_ORIGINS",
                "http://localhost:3000,http://127.0.0.1:3000",
            ).split(",")
            if origin.strip()
        ]

        return AppConfig(
            environment=environment,
            auth=AuthConfig(
                secret_key=secret_key,
                refresh_secret_key=refresh_secret_key,
                access_token_ttl_seconds=_env_int("AUTH_ACCESS_TOKEN_TTL_SECONDS", 3600),
                refresh_token_ttl_seconds=_env_int(
                    "AUTH_REFRESH_TOKEN_TTL_SECONDS", 7 * 24 * 60 * 60
                ),
                issuer=issuer,
                audience=audience,
                top_role=top_role,
                admin_email=admin_email,
                admin_password=admin_password,
            ),
            lockout=LockoutConfig(
                max_failed_attempts=_env_int("AUTH_LOCK_MAX_ATTEMPTS", 5),
                lock_seconds=_env_int("AUTH_LOCK_SECONDS", 2 * 60 * 60),
            ),
            otp=OTPConfig(
                code_length=_env_int("OTP_LENGTH", 6),
                ttl_seconds=_env_int("OTP_TTL_SECONDS", 10 * 60),
                max_attempts=_env_int("OTP_MAX_ATTEMPTS", 3),
                retention_seconds=_env_int("OTP_RETENTION_SECONDS", 24 * 60 * 60),
                static_bypass_enabled=_env_bool("OTP_STATIC_BYPASS_ENABLED"),
                static_bypass_code=os.getenv("OTP_STATIC_BYPASS_CODE", "").strip(),
            ),
            session=SessionConfig(
                max_concurrent=_env_int("SESSION_MAX_CONCURRENT", 3),
                inactivity_seconds=_env_int("SESSION_INACTIVITY_SECONDS", 24 * 60 * 60),
                retention_days=_env_int("SESSION_RETENTION_DAYS", 30),
                fresh_auth_seconds=_env_int("SESSION_FRESH_AUTH_SECONDS", 30 * 60),
            ),
            rate_limits=RateLimitConfig(
                login=RateLimitRule(
                    name="login",
                    max_attempts=_env_int("RATE_LIMIT_LOGIN_MAX_ATTEMPTS", 5),
                    window_seconds=_env_int("RATE_LIMIT_LOGIN_WINDOW_SECONDS", 15 * 60),
                ),
                otp_verify=RateLimitRule(
                    name="otp_verify",
                    max_attempts=_env_int("RATE_LIMIT_OTP_VERIFY_MAX_ATTEMPTS", 3),
                    window_seconds=_env_int(
                        "RATE_LIMIT_OTP_VERIFY_WINDOW_SECONDS", 15 * 60
                    ),
                ),
                otp_resend=RateLimitRule(
                    name="otp_resend",
                    max_attempts=_env_int("RATE_LIMIT_OTP_RESEND_MAX_ATTEMPTS", 3),
                    window_seconds=_env_int("RATE_LIMIT_OTP_RESEND_WINDOW_SECONDS", 5 * 60),
                ),
                password_change=RateLimitRule(
                    name="password_change",
                    max_attempts=_env_int("RATE_LIMIT_PASSWORD_CHANGE_MAX_ATTEMPTS", 3),
                    window_seconds=_env_int("RATE_LIMIT_PASSWORD_CHANGE_WINDOW_SECONDS", 15 * 60),
                ),
            ),
            permissions=PermissionConfig(
                cache_ttl_seconds=_env_int("PERMISSION_CACHE_TTL_SECONDS", 5 * 60),
            ),
            cleanup=CleanupConfig(
                inactive_sessions_interval_seconds=_env_int(
                    "CLEANUP_INACTIVE_SESSIONS_INTERVAL_SECONDS", 30 * 60
                ),
                expired_otps_interval_seconds=_env_int(
                    "CLEANUP_EXPIRED_OTPS_INTERVAL_SECONDS", 15 * 60
                ),
                old_sessions_interval_seconds=_env_int(
                    "CLEANUP_OLD_SESSIONS_INTERVAL_SECONDS", 24 * 60 * 60
                ),
            ),
            store=StoreConfig(
                mongodb_uri=os.getenv("MONGODB_URI", "").strip(),
                mongodb_db=os.getenv("MONGODB_DB", "crm_auth").strip() or "crm_auth",
                timeout_ms=_env_int("MONGODB_TIMEOUT_MS", 3000),
                runtime_dir=os.getenv("RUNTIME_DIR", "runtime").strip() or "runtime",
            ),
            smtp=SmtpConfig(
                host=os.getenv("SMTP_HOST", "").strip(),
                port=_env_int("SMTP_PORT", 587),
                user=os.getenv("SMTP_USER", "").strip(),
                password=os.getenv("SMTP_PASSWORD", "").strip(),
                from_email=os.getenv("SMTP_FROM", "").strip(),
            ),
            logging=LoggingConfig(level=os.getenv("LOG_LEVEL", "INFO").strip() or "INFO"),
            security=SecurityConfig(
                cors_allowed_origins=cors_allowed_origins,
                request_max_bytes=_env_int("REQUEST_MAX_BYTES", 1024 * 1024),
            ),
        )
