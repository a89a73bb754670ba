"""HTTP middleware and exception handler wiring for FastAPI apps."""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from crm_auth.api.contracts import ApiErrorResponse
from crm_auth.api.errors import ApiErrorCode, to_error_payload
from crm_auth.core.config import AppConfig
from crm_auth.core.logging import set_correlation_id
from crm_auth.core.store import StoreUnavailableError


def error_response(status_code: int, payload: dict[str, Any], headers: dict[str, str] | None = None) -> JSONResponse:
    """Render an error payload into the failure envelope."""
    return JSONResponse(
        status_code=status_code,
        content=ApiErrorResponse(**payload).to_content(),
        headers=headers,
    )


def _internal_error() -> JSONResponse:
    return error_response(
        500,
        {
            "error_code": ApiErrorCode.INTERNAL_SERVER_ERROR,
            "message": "Internal server error",
        },
    )


def register_http_middleware(app: FastAPI, *, config: AppConfig, logger: Any) -> None:
    """Attach common security and observability middleware to an app."""

    @app.middleware("http")
    async def request_size_limit_middleware(request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                parsed_length = int(content_length)
            except ValueError:
                parsed_length = 0
            if parsed_length > config.security.request_max_bytes:
                return error_response(
                    413,
                    {
                        "error_code": ApiErrorCode.REQUEST_TOO_LARGE,
                        "message": (
                            "Request size exceeds configured limit "
                            f"({config.security.request_max_bytes} bytes)."
                        ),
                    },
                )
        return await call_next(request)

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        correlation_id = (
            request.headers.get("x-request-id")
            or request.headers.get("x-correlation-id")
            or uuid.uuid4().hex
        )
        set_correlation_id(correlation_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none'; base-uri 'none'"
        )
        response.headers["Cache-Control"] = "no-store"
        logger.info(
            "request_completed",
            extra={
                "path": request.url.path,
                "method": request.method,
                "status_code": response.status_code,
            },
        )
        return response


def register_exception_handlers(app: FastAPI, *, logger: Any) -> None:
    """Attach API exception handlers that return stable error contracts."""

    @app.exception_handler(HTTPException)
    async def handle_http_exception(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        logger.warning(
            "http_exception",
            extra={
                "path": request.url.path,
                "method": request.method,
                "status_code": exc.status_code,
            },
        )
        return error_response(
            exc.status_code,
            to_error_payload(exc.detail, exc.status_code),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_exception(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        logger.warning(
            "validation_exception",
            extra={
                "path": request.url.path,
                "method": request.method,
                "status_code": 400,
            },
        )
        errors = [
            {
                "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
                "message": str(error.get("msg", "")),
            }
            for error in exc.errors()
        ]
        return error_response(
            400,
            {
                "error_code": ApiErrorCode.VALIDATION_ERROR,
                "message": "Validation failed",
                "errors": errors,
            },
        )

    @app.exception_handler(StoreUnavailableError)
    async def handle_store_unavailable(
        request: Request,
        exc: StoreUnavailableError,
    ) -> JSONResponse:
        logger.exception(
            "store_unavailable",
            extra={
                "path": request.url.path,
                "method": request.method,
                "status_code": 500,
                "reason": str(exc),
            },
        )
        return _internal_error()

    @app.exception_handler(Exception)
    async def handle_unexpected_exception(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        logger.exception(
            "unexpected_exception",
            extra={
                "path": request.url.path,
                "method": request.method,
                "status_code": 500,
            },
        )
        return _internal_error()
