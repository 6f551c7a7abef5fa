"""Magic-link sign-in flow: link request, code exchange, session lookup, sign-out."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

import structlog

from keyhub.config import get_settings
from keyhub.core.identity import (
    IdentityProvider,
    IdentityProviderError,
    code_challenge_for,
    generate_code_verifier,
    get_identity_client,
)
from keyhub.core.sessions import (
    SessionContext,
    SessionService,
    SessionStateError,
    get_session_service,
)

logger = structlog.get_logger(__name__)


class AuthFlowError(Exception):
    """Raised for sign-in and sign-out failures."""

    def __init__(self, detail: str, code: str, status_code: int) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code
        self.status_code = status_code


@dataclass(frozen=True)
class MagicLinkRequest:
    """Result of requesting a magic link; the verifier must be kept client-side."""

    email: str
    code_verifier: str


class AuthService:
    """Single collaborator for session lookup, code exchange, and sign-out."""

    def __init__(
        self,
        identity: IdentityProvider,
        sessions: SessionService,
        callback_url: str,
    ) -> None:
        self._identity = identity
        self._sessions = sessions
        self._callback_url = callback_url

    async def send_magic_link(self, email: str) -> MagicLinkRequest:
        """Ask the identity provider to email a sign-in link redirecting to the callback."""
        normalized = email.strip().lower()
        if "@" not in normalized:
            raise AuthFlowError("A valid email address is required.", "missing_field", 400)
        verifier = generate_code_verifier()
        try:
            await self._identity.send_magic_link(
                email=normalized,
                redirect_to=self._callback_url,
                code_challenge=code_challenge_for(verifier),
            )
        except IdentityProviderError as exc:
            logger.warning("magic_link_send_failed", status_code=exc.status_code)
            raise AuthFlowError(
                "Failed to send login link.", "identity_unavailable", 502
            ) from exc
        logger.info("magic_link_sent")
        return MagicLinkRequest(email=normalized, code_verifier=verifier)

    async def exchange_code(self, auth_code: str, code_verifier: str | None) -> str:
        """Exchange a callback code for a new session and return its raw id."""
        if not code_verifier:
            raise AuthFlowError("Sign-in link expired.", "session_required", 401)
        try:
            grant = await self._identity.exchange_code(
                auth_code=auth_code, code_verifier=code_verifier
            )
            session_id = await self._sessions.create_session(
                user_id=grant.user.user_id,
                email=grant.user.email,
                access_token=grant.access_token,
                refresh_token=grant.refresh_token,
            )
        except IdentityProviderError as exc:
            logger.warning("code_exchange_failed", status_code=exc.status_code)
            raise AuthFlowError("Sign-in failed.", "identity_unavailable", 502) from exc
        except SessionStateError as exc:
            raise AuthFlowError(exc.detail, exc.code, exc.status_code) from exc
        logger.info("session_created", user_id=str(grant.user.user_id))
        return session_id

    async def get_session(self, session_id: str | None) -> SessionContext | None:
        """Resolve the cookie value into a session context, or None when signed out."""
        if not session_id:
            return None
        return await self._sessions.get_session(session_id)

    async def sign_out(self, session_id: str | None) -> None:
        """Revoke the local session, then best-effort revoke the provider session."""
        if not session_id:
            return
        try:
            payload = await self._sessions.revoke_session(session_id)
        except SessionStateError as exc:
            raise AuthFlowError("Failed to log out", "logout_failed", 500) from exc
        if payload is None:
            return
        try:
            await self._identity.sign_out(payload.access_token)
        except IdentityProviderError as exc:
            logger.warning("identity_sign_out_failed", status_code=exc.status_code)
        logger.info("session_revoked", user_id=payload.user_id)


@lru_cache
def get_auth_service() -> AuthService:
    """Create and cache the auth service."""
    settings = get_settings()
    site_url = str(settings.identity.site_url).rstrip("/")
    return AuthService(
        identity=get_identity_client(),
        sessions=get_session_service(),
        callback_url=f"{site_url}{settings.routes.callback_path}",
    )
