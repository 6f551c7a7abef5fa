"""Middleware package exports."""

from keyhub.middleware.correlation_id import CorrelationIdMiddleware
from keyhub.middleware.logging import LoggingMiddleware
from keyhub.middleware.security_headers import SecurityHeadersMiddleware
from keyhub.middleware.session_guard import GuardPolicy, SessionGuardMiddleware

__all__ = [
    "CorrelationIdMiddleware",
    "GuardPolicy",
    "LoggingMiddleware",
    "SecurityHeadersMiddleware",
    "SessionGuardMiddleware",
]
