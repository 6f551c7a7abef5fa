"""Global exception handlers enforcing the `{error, code}` response contract."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from keyhub.middleware.correlation_id import get_correlation_id

_DEFAULT_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "invalid_request",
    401: "session_required",
    404: "not_found",
    405: "method_not_allowed",
    422: "invalid_request",
    502: "upstream_unavailable",
    503: "service_unavailable",
}

logger = structlog.get_logger(__name__)


def error_response(status_code: int, error: str, code: str, **extra: Any) -> JSONResponse:
    """Build standardized JSON error payload."""
    return JSONResponse(status_code=status_code, content={"error": error, "code": code, **extra})


def _resolve_error_code(status_code: int, raw_code: str | None) -> str:
    if raw_code:
        return raw_code
    if status_code >= 500:
        return _DEFAULT_ERROR_CODE_BY_STATUS.get(status_code, "internal_error")
    return _DEFAULT_ERROR_CODE_BY_STATUS.get(status_code, "request_failed")


def _extract_error_and_code(detail: Any) -> tuple[str, str | None]:
    """Normalize exception detail payload into message and optional code."""
    if isinstance(detail, dict):
        raw_error = detail.get("error", detail.get("detail", "Request failed."))
        raw_code = detail.get("code")
        return str(raw_error), str(raw_code) if raw_code is not None else None
    if isinstance(detail, str):
        return detail, None
    return "Request failed.", None


def _sanitize_error(error: str, status_code: int, environment: str) -> str:
    """Hide internal failure details outside development."""
    if environment != "development" and status_code >= 500:
        return "Internal server error"
    return error


def register_exception_handlers(app: FastAPI, environment: str) -> None:
    """Register global exception handlers enforcing error shape contract."""

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Normalize framework HTTP exceptions to contract payload."""
        error, raw_code = _extract_error_and_code(exc.detail)
        code = _resolve_error_code(exc.status_code, raw_code)
        if 400 <= exc.status_code < 500:
            logger.warning(
                "request_rejected",
                status_code=exc.status_code,
                code=code,
                path=request.url.path,
                method=request.method,
            )
        return error_response(status_code=exc.status_code, error=error, code=code)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_exception(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Map request validation errors to a 400 payload."""
        error = "Invalid request payload."
        if environment == "development":
            errors = exc.errors()
            if errors:
                error = f"Invalid request payload: {errors[0].get('msg', 'validation error')}."
        logger.warning("request_validation_failed", path=request.url.path, method=request.method)
        return error_response(status_code=400, error=error, code="invalid_request")

    @app.exception_handler(Exception)
    async def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
        """Mask internal errors and enforce contract payload."""
        logger.error(
            "unhandled_exception",
            correlation_id=get_correlation_id(request),
            path=request.url.path,
            method=request.method,
            error=str(exc),
        )
        error = _sanitize_error(str(exc), 500, environment)
        return error_response(status_code=500, error=error, code="internal_error")
