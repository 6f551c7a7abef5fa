"""Async client for a GoTrue-compatible magic-link identity provider."""

from __future__ import annotations

import base64
import secrets
from dataclasses import dataclass
from functools import lru_cache
from hashlib import sha256
from typing import Any, Protocol
from uuid import UUID

import httpx

from keyhub.config import get_settings

DEFAULT_TIMEOUT = httpx.Timeout(connect=2.0, read=5.0, write=5.0, pool=5.0)


@dataclass(frozen=True)
class IdentityUser:
    """Principal identity reported by the provider."""

    user_id: UUID
    email: str


@dataclass(frozen=True)
class IdentityGrant:
    """Tokens and user returned from a successful code exchange."""

    access_token: str
    refresh_token: str
    expires_in: int
    user: IdentityUser


class IdentityProviderError(Exception):
    """Base class for identity provider failures."""

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class IdentityUnavailableError(IdentityProviderError):
    """Raised when the identity provider is unreachable or failing."""


class IdentityResponseError(IdentityProviderError):
    """Raised when the identity provider rejects a request or returns malformed data."""


class IdentityProvider(Protocol):
    """Identity operations the dashboard depends on."""

    async def send_magic_link(self, email: str, redirect_to: str, code_challenge: str) -> None:
        """Email a one-time sign-in link."""

    async def exchange_code(self, auth_code: str, code_verifier: str) -> IdentityGrant:
        """Exchange a callback code for tokens."""

    async def sign_out(self, access_token: str) -> None:
        """Invalidate the provider-side session."""


def generate_code_verifier() -> str:
    """Generate a PKCE code verifier (64 URL-safe characters)."""
    return secrets.token_urlsafe(48)


def code_challenge_for(verifier: str) -> str:
    """Derive the S256 PKCE challenge for a verifier."""
    digest = sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class GoTrueClient:
    """Magic-link identity client speaking the GoTrue REST API."""

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        timeout: httpx.Timeout | float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Create client with sane defaults and optional injected transport."""
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout or DEFAULT_TIMEOUT,
        )
        self._anon_key = anon_key

    async def send_magic_link(self, email: str, redirect_to: str, code_challenge: str) -> None:
        """Request a PKCE magic link for email, creating the user on first sign-in."""
        await self._request(
            "POST",
            "/auth/v1/otp",
            params={"redirect_to": redirect_to},
            json={
                "email": email,
                "create_user": True,
                "code_challenge": code_challenge,
                "code_challenge_method": "s256",
            },
        )

    async def exchange_code(self, auth_code: str, code_verifier: str) -> IdentityGrant:
        """Exchange auth code plus verifier for an access/refresh token grant."""
        response = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "pkce"},
            json={"auth_code": auth_code, "code_verifier": code_verifier},
        )
        payload = self._json_object(response)
        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token")
        user_payload = payload.get("user")
        if not isinstance(access_token, str) or not isinstance(refresh_token, str):
            raise IdentityResponseError("Invalid token grant payload.", response.status_code)
        if not isinstance(user_payload, dict):
            raise IdentityResponseError("Invalid token grant payload.", response.status_code)
        expires_in = payload.get("expires_in", 3600)
        return IdentityGrant(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(expires_in) if isinstance(expires_in, int | float) else 3600,
            user=self._parse_user(user_payload, response.status_code),
        )

    async def sign_out(self, access_token: str) -> None:
        """Revoke the provider session behind access_token."""
        await self._request(
            "POST", "/auth/v1/logout", headers={"authorization": f"Bearer {access_token}"}
        )

    async def aclose(self) -> None:
        """Close underlying HTTP client if owned by this instance."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> GoTrueClient:
        """Enter async context manager."""
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        """Exit async context manager and close managed resources."""
        del exc_type, exc, tb
        await self.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Execute request with the anon key and normalize upstream failures."""
        headers = {"apikey": self._anon_key, **kwargs.pop("headers", {})}
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.RequestError as exc:
            raise IdentityUnavailableError("Identity provider unavailable.") from exc

        if response.status_code >= 500:
            raise IdentityUnavailableError("Identity provider unavailable.", response.status_code)
        if response.status_code >= 400:
            raise IdentityResponseError(
                f"Identity provider request failed with status {response.status_code}.",
                response.status_code,
            )
        return response

    @staticmethod
    def _json_object(response: httpx.Response) -> dict[str, Any]:
        """Return response JSON as object."""
        try:
            payload = response.json()
        except ValueError as exc:
            raise IdentityResponseError(
                "Identity provider returned invalid JSON.", response.status_code
            ) from exc
        if not isinstance(payload, dict):
            raise IdentityResponseError(
                "Identity provider returned invalid JSON object.", response.status_code
            )
        return payload

    @staticmethod
    def _parse_user(payload: dict[str, Any], status_code: int) -> IdentityUser:
        """Validate the user object shape."""
        email = payload.get("email")
        if not isinstance(email, str) or not email:
            raise IdentityResponseError("Invalid user payload.", status_code)
        try:
            user_id = UUID(str(payload.get("id", "")))
        except ValueError as exc:
            raise IdentityResponseError("Invalid user payload.", status_code) from exc
        return IdentityUser(user_id=user_id, email=email)


@lru_cache
def get_identity_client() -> GoTrueClient:
    """Create and cache identity provider client."""
    settings = get_settings()
    return GoTrueClient(
        base_url=str(settings.identity.base_url),
        anon_key=settings.identity.anon_key.get_secret_value(),
    )
