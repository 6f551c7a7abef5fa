"""Session-gated route protection for the login page, dashboard, and auth callback."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import RedirectResponse, Response

from keyhub.config import get_settings
from keyhub.core.sessions import SessionContext, SessionStateError
from keyhub.services.auth_service import get_auth_service

logger = structlog.get_logger(__name__)

_SAFE_METHODS = frozenset({"GET", "HEAD"})


class SessionResolver(Protocol):
    """Resolve a session cookie value into a session context."""

    async def get_session(self, session_id: str | None) -> SessionContext | None:
        """Return the session, or None when signed out."""


@dataclass(frozen=True)
class GuardDecision:
    """Pass-through when `redirect_to` is None, otherwise a redirect target path."""

    redirect_to: str | None = None

    @property
    def proceed(self) -> bool:
        """Return True when the request continues unmodified."""
        return self.redirect_to is None


class GuardPolicy:
    """Pure allow/redirect decision over (path, session presence)."""

    def __init__(
        self,
        login_path: str = "/login",
        landing_path: str = "/dashboards",
        callback_path: str = "/auth/callback",
    ) -> None:
        self.login_path = login_path
        self.landing_path = landing_path
        self.callback_path = callback_path

    def is_guarded(self, path: str) -> bool:
        """Return True for the route patterns the guard intercepts."""
        if path == self.login_path or self.is_callback(path):
            return True
        return path == self.landing_path or path.startswith(f"{self.landing_path}/")

    def is_callback(self, path: str) -> bool:
        """Return True for the auth-callback path."""
        return path.startswith(self.callback_path)

    def decide(self, path: str, has_session: bool) -> GuardDecision:
        """Decide whether to proceed or redirect."""
        if self.is_callback(path):
            return GuardDecision()
        if not has_session and path != self.login_path:
            return GuardDecision(redirect_to=self.login_path)
        if has_session and path == self.login_path:
            return GuardDecision(redirect_to=self.landing_path)
        return GuardDecision()


class SessionGuardMiddleware(BaseHTTPMiddleware):
    """Redirect guarded navigations based on session presence; never mutates sessions."""

    def __init__(
        self,
        app,
        session_resolver: SessionResolver | None = None,
        policy: GuardPolicy | None = None,
        cookie_name: str | None = None,
    ) -> None:
        """Initialize middleware with optional explicit collaborators for testability."""
        super().__init__(app)
        settings = None
        if session_resolver is None or policy is None or cookie_name is None:
            settings = get_settings()

        if session_resolver is None:
            session_resolver = get_auth_service()
        self._resolver = session_resolver

        if policy is None:
            assert settings is not None
            policy = GuardPolicy(
                login_path=settings.routes.login_path,
                landing_path=settings.routes.landing_path,
                callback_path=settings.routes.callback_path,
            )
        self._policy = policy

        if cookie_name is None:
            assert settings is not None
            cookie_name = settings.identity.session_cookie_name
        self._cookie_name = cookie_name

    async def dispatch(self, request: Request, call_next) -> Response:
        """Attach the resolved session to request state, then allow or redirect."""
        path = request.url.path
        if not self._policy.is_guarded(path) or self._policy.is_callback(path):
            return await call_next(request)

        session = await self._resolve_session(request)
        request.state.session = session
        decision = self._policy.decide(path, has_session=session is not None)
        if decision.proceed:
            return await call_next(request)

        target = request.url.replace(path=decision.redirect_to, query="")
        status_code = 307 if request.method in _SAFE_METHODS else 303
        return RedirectResponse(url=str(target), status_code=status_code)

    async def _resolve_session(self, request: Request) -> SessionContext | None:
        """Resolve session from cookie, failing closed when the backend is unavailable."""
        try:
            return await self._resolver.get_session(request.cookies.get(self._cookie_name))
        except SessionStateError:
            logger.warning("session_guard_backend_unavailable", path=request.url.path)
            return None
