"""Shared FastAPI dependency helpers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from keyhub.config import Settings, get_settings
from keyhub.core.sessions import SessionContext, SessionStateError
from keyhub.services.auth_service import AuthService, get_auth_service


async def get_session_context(
    request: Request,
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> SessionContext | None:
    """Return the session attached by the guard, resolving the cookie when absent."""
    if hasattr(request.state, "session"):
        return request.state.session
    cookie_name = settings.identity.session_cookie_name
    try:
        return await auth_service.get_session(request.cookies.get(cookie_name))
    except SessionStateError as exc:
        raise HTTPException(
            status_code=exc.status_code,
            detail={"error": exc.detail, "code": exc.code},
        ) from exc


async def require_session(
    session: Annotated[SessionContext | None, Depends(get_session_context)],
) -> SessionContext:
    """Reject the request with 401 when no session is present."""
    if session is None:
        raise HTTPException(
            status_code=401,
            detail={"error": "Sign-in required.", "code": "session_required"},
        )
    return session
