"""FastAPI application factory."""

from __future__ import annotations

from fastapi import FastAPI

from keyhub.config import configure_structlog, get_settings
from keyhub.error_handlers import register_exception_handlers
from keyhub.middleware.correlation_id import CorrelationIdMiddleware
from keyhub.middleware.logging import LoggingMiddleware
from keyhub.middleware.security_headers import SecurityHeadersMiddleware
from keyhub.middleware.session_guard import SessionGuardMiddleware
from keyhub.routers import auth, dashboard, health, public


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    configure_structlog(settings)

    app = FastAPI(title=settings.app.service)
    app.add_middleware(SessionGuardMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(
        SecurityHeadersMiddleware,
        enable_hsts=settings.identity.cookie_secure,
    )
    app.add_middleware(CorrelationIdMiddleware)
    register_exception_handlers(app, settings.app.environment)

    app.include_router(public.router)
    app.include_router(auth.router)
    app.include_router(dashboard.router)
    app.include_router(health.router)
    return app


app = create_app()
