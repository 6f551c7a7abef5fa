"""Security headers middleware."""

from __future__ import annotations

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

_HSTS_VALUE = "max-age=63072000; includeSubDomains"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Ensure every response carries mandatory security headers.

    Route handlers may set their own value for any of these headers; the
    middleware only fills in what is missing. Strict-Transport-Security is
    emitted only when the deployment serves cookies over HTTPS.
    """

    _HEADERS: dict[str, str] = {
        "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'; base-uri 'none'",
        "X-Frame-Options": "DENY",
        "X-Content-Type-Options": "nosniff",
        "Referrer-Policy": "no-referrer",
        "Cache-Control": "no-store",
    }

    def __init__(self, app: ASGIApp, enable_hsts: bool = False) -> None:
        super().__init__(app)
        self._headers = dict(self._HEADERS)
        if enable_hsts:
            self._headers["Strict-Transport-Security"] = _HSTS_VALUE

    async def dispatch(self, request: Request, call_next) -> Response:
        """Fill in security headers missing from the application response."""
        response = await call_next(request)
        for header_name, header_value in self._headers.items():
            response.headers.setdefault(header_name, header_value)
        return response
