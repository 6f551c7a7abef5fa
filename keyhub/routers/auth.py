"""Magic-link sign-in, callback, and sign-out routes."""

from __future__ import annotations

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from keyhub.config import Settings, get_settings
from keyhub.error_handlers import error_response
from keyhub.schemas.auth import LoginRequest, MessageResponse
from keyhub.services.auth_service import AuthFlowError, AuthService, get_auth_service

router = APIRouter(tags=["auth"])

logger = structlog.get_logger(__name__)


@router.get("/login")
async def login_page(
    settings: Annotated[Settings, Depends(get_settings)],
) -> dict[str, str]:
    """Describe the sign-in surface for signed-out visitors."""
    return {
        "title": "Sign in",
        "method": "magic_link",
        "submit": settings.routes.login_path,
    }


@router.post("/login", response_model=MessageResponse)
async def request_magic_link(
    payload: LoginRequest,
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> MessageResponse | JSONResponse:
    """Email a sign-in link and keep the PKCE verifier in an HTTP-only cookie."""
    try:
        link_request = await auth_service.send_magic_link(payload.email)
    except AuthFlowError as exc:
        return error_response(exc.status_code, exc.detail, exc.code)

    response = JSONResponse(
        content=MessageResponse(message="Check your email for the login link!").model_dump()
    )
    response.set_cookie(
        key=settings.identity.verifier_cookie_name,
        value=link_request.code_verifier,
        max_age=settings.identity.verifier_ttl_seconds,
        httponly=True,
        secure=settings.identity.cookie_secure,
        samesite="lax",
        path=settings.routes.callback_path,
    )
    return response


@router.get("/auth/callback")
async def auth_callback(
    request: Request,
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
    settings: Annotated[Settings, Depends(get_settings)],
    code: Annotated[str | None, Query()] = None,
) -> RedirectResponse:
    """Exchange the emailed code for a session and land on the dashboard."""
    identity = settings.identity
    if not code:
        return RedirectResponse(url=settings.routes.landing_path, status_code=307)

    verifier = request.cookies.get(identity.verifier_cookie_name)
    try:
        session_id = await auth_service.exchange_code(auth_code=code, code_verifier=verifier)
    except AuthFlowError as exc:
        logger.warning("auth_callback_failed", code=exc.code)
        return RedirectResponse(url=settings.routes.login_path, status_code=307)

    response = RedirectResponse(url=settings.routes.landing_path, status_code=307)
    response.set_cookie(
        key=identity.session_cookie_name,
        value=session_id,
        max_age=identity.session_ttl_seconds,
        httponly=True,
        secure=identity.cookie_secure,
        samesite="lax",
    )
    response.delete_cookie(key=identity.verifier_cookie_name, path=settings.routes.callback_path)
    return response


@router.post("/auth/logout", response_model=None)
async def logout(
    request: Request,
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> RedirectResponse | JSONResponse:
    """Revoke the server session and send the browser back to sign-in."""
    cookie_name = settings.identity.session_cookie_name
    try:
        await auth_service.sign_out(request.cookies.get(cookie_name))
    except AuthFlowError as exc:
        return error_response(exc.status_code, exc.detail, exc.code)

    response = RedirectResponse(url=settings.routes.login_path, status_code=303)
    response.delete_cookie(key=cookie_name)
    return response
