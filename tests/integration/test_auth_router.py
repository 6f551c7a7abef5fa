"""Integration tests for magic-link sign-in, callback, and logout routes."""

from __future__ import annotations

from uuid import uuid4

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from redis.exceptions import RedisError

from keyhub.config import Settings, get_settings
from keyhub.core.identity import (
    IdentityGrant,
    IdentityResponseError,
    IdentityUnavailableError,
    IdentityUser,
)
from keyhub.core.sessions import SessionService
from keyhub.error_handlers import register_exception_handlers
from keyhub.routers.auth import router
from keyhub.services.auth_service import AuthService, get_auth_service


class _FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.fail = False

    async def get(self, key: str) -> str | None:
        if self.fail:
            raise RedisError("redis unavailable")
        return self.values.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        del ttl
        self.values[key] = value
        return True

    async def delete(self, key: str) -> int:
        if self.fail:
            raise RedisError("redis unavailable")
        return 1 if self.values.pop(key, None) is not None else 0


class _FakeIdentity:
    def __init__(self) -> None:
        self.user = IdentityUser(user_id=uuid4(), email="user@example.com")
        self.sent: list[str] = []
        self.fail_send = False
        self.fail_exchange = False

    async def send_magic_link(self, email: str, redirect_to: str, code_challenge: str) -> None:
        del code_challenge
        if self.fail_send:
            raise IdentityUnavailableError("down", 503)
        self.sent.append(f"{email}->{redirect_to}")

    async def exchange_code(self, auth_code: str, code_verifier: str) -> IdentityGrant:
        if self.fail_exchange or auth_code != "good-code" or code_verifier != "verifier":
            raise IdentityResponseError("rejected", 400)
        return IdentityGrant(
            access_token="access", refresh_token="refresh", expires_in=3600, user=self.user
        )

    async def sign_out(self, access_token: str) -> None:
        del access_token


class _Harness:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.identity = _FakeIdentity()
        self.redis = _FakeRedis()
        self.auth_service = AuthService(
            identity=self.identity,
            sessions=SessionService(
                redis_client=self.redis,  # type: ignore[arg-type]
                session_ttl_seconds=600,
            ),
            callback_url="http://testserver/auth/callback",
        )
        self.app = FastAPI()
        register_exception_handlers(self.app, environment="production")
        self.app.include_router(router)
        self.app.dependency_overrides[get_auth_service] = lambda: self.auth_service
        self.app.dependency_overrides[get_settings] = lambda: self.settings

    def client(self) -> AsyncClient:
        return AsyncClient(transport=ASGITransport(app=self.app), base_url="http://testserver")


@pytest.mark.asyncio
async def test_login_page_describes_magic_link_sign_in(test_settings: Settings) -> None:
    """The sign-in surface is a magic-link form posting back to /login."""
    harness = _Harness(test_settings)
    async with harness.client() as client:
        response = await client.get("/login")

    assert response.status_code == 200
    assert response.json()["method"] == "magic_link"


@pytest.mark.asyncio
async def test_post_login_sends_link_and_sets_verifier_cookie(test_settings: Settings) -> None:
    """Requesting a link stores the PKCE verifier in an HTTP-only cookie."""
    harness = _Harness(test_settings)
    async with harness.client() as client:
        response = await client.post("/login", json={"email": "user@example.com"})

    assert response.status_code == 200
    assert response.json() == {"message": "Check your email for the login link!"}
    assert harness.identity.sent == ["user@example.com->http://testserver/auth/callback"]
    set_cookie = response.headers["set-cookie"]
    assert set_cookie.startswith("keyhub_pkce=")
    assert "HttpOnly" in set_cookie
    assert "Path=/auth/callback" in set_cookie


@pytest.mark.asyncio
async def test_post_login_provider_failure_is_502(test_settings: Settings) -> None:
    """Identity provider outages surface as identity_unavailable."""
    harness = _Harness(test_settings)
    harness.identity.fail_send = True
    async with harness.client() as client:
        response = await client.post("/login", json={"email": "user@example.com"})

    assert response.status_code == 502
    assert response.json() == {
        "error": "Failed to send login link.",
        "code": "identity_unavailable",
    }


@pytest.mark.asyncio
async def test_callback_with_valid_code_sets_session_and_redirects(
    test_settings: Settings,
) -> None:
    """A good code creates a session cookie and lands on the dashboard."""
    harness = _Harness(test_settings)
    async with harness.client() as client:
        response = await client.get(
            "/auth/callback",
            params={"code": "good-code"},
            headers={"cookie": "keyhub_pkce=verifier"},
        )

    assert response.status_code == 307
    assert response.headers["location"] == "/dashboards"
    cookies = response.headers.get_list("set-cookie")
    session_cookie = next(cookie for cookie in cookies if cookie.startswith("keyhub_session="))
    assert "HttpOnly" in session_cookie
    assert any(cookie.startswith('keyhub_pkce=""') for cookie in cookies)
    assert len(harness.redis.values) == 1


@pytest.mark.asyncio
async def test_callback_failure_redirects_to_login(test_settings: Settings) -> None:
    """Rejected codes send the browser back to sign-in without a session."""
    harness = _Harness(test_settings)
    async with harness.client() as client:
        response = await client.get(
            "/auth/callback",
            params={"code": "bad-code"},
            headers={"cookie": "keyhub_pkce=verifier"},
        )

    assert response.status_code == 307
    assert response.headers["location"] == "/login"
    assert harness.redis.values == {}


@pytest.mark.asyncio
async def test_callback_without_code_redirects_to_dashboard(test_settings: Settings) -> None:
    """Without a code the guard on /dashboards decides what happens next."""
    harness = _Harness(test_settings)
    async with harness.client() as client:
        response = await client.get("/auth/callback")

    assert response.status_code == 307
    assert response.headers["location"] == "/dashboards"


@pytest.mark.asyncio
async def test_logout_revokes_session_and_redirects_to_login(test_settings: Settings) -> None:
    """Logout clears the server session and the cookie."""
    harness = _Harness(test_settings)
    session_id = await harness.auth_service.exchange_code("good-code", "verifier")
    async with harness.client() as client:
        response = await client.post(
            "/auth/logout", headers={"cookie": f"keyhub_session={session_id}"}
        )

    assert response.status_code == 303
    assert response.headers["location"] == "/login"
    assert response.headers["set-cookie"].startswith('keyhub_session=""')
    assert harness.redis.values == {}


@pytest.mark.asyncio
async def test_logout_backend_failure_is_500(test_settings: Settings) -> None:
    """Logout reports failure when the session backend is down."""
    harness = _Harness(test_settings)
    harness.redis.fail = True
    async with harness.client() as client:
        response = await client.post("/auth/logout", headers={"cookie": "keyhub_session=abc"})

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to log out", "code": "logout_failed"}
