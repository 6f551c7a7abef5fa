"""Redis-backed dashboard session state."""

from __future__ import annotations

import json
import secrets
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from functools import lru_cache
from hashlib import sha256
from uuid import UUID

from redis import asyncio as redis_async
from redis.asyncio.client import Redis
from redis.exceptions import RedisError

from keyhub.config import get_settings


@dataclass(frozen=True)
class SessionPayload:
    """Serializable Redis payload for a signed-in browser session."""

    user_id: str
    email: str
    access_token: str
    refresh_token: str
    issued_at: str


@dataclass(frozen=True)
class SessionContext:
    """Read-only principal context threaded into handlers."""

    session_id: str
    user_id: UUID
    email: str


class SessionStateError(Exception):
    """Raised when session lifecycle operations fail."""

    def __init__(self, detail: str, code: str, status_code: int) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code
        self.status_code = status_code


class SessionService:
    """Create, resolve, and revoke opaque cookie sessions."""

    def __init__(self, redis_client: Redis, session_ttl_seconds: int) -> None:
        self._redis = redis_client
        self._session_ttl_seconds = session_ttl_seconds

    async def create_session(
        self,
        user_id: UUID,
        email: str,
        access_token: str,
        refresh_token: str,
    ) -> str:
        """Persist a session payload and return the raw session id for the cookie."""
        session_id = secrets.token_urlsafe(32)
        payload = SessionPayload(
            user_id=str(user_id),
            email=email,
            access_token=access_token,
            refresh_token=refresh_token,
            issued_at=datetime.now(UTC).isoformat(),
        )
        try:
            await self._redis.setex(
                self._session_key(session_id),
                self._session_ttl_seconds,
                json.dumps(asdict(payload)),
            )
        except RedisError as exc:
            raise SessionStateError(
                "Session backend unavailable.", "session_unavailable", 503
            ) from exc
        return session_id

    async def get_session(self, session_id: str) -> SessionContext | None:
        """Resolve a raw session id into its principal context."""
        payload = await self._get_payload(session_id)
        if payload is None:
            return None
        try:
            user_id = UUID(payload.user_id)
        except ValueError:
            return None
        return SessionContext(session_id=session_id, user_id=user_id, email=payload.email)

    async def revoke_session(self, session_id: str) -> SessionPayload | None:
        """Delete a session and return the payload it carried, if any."""
        payload = await self._get_payload(session_id)
        try:
            await self._redis.delete(self._session_key(session_id))
        except RedisError as exc:
            raise SessionStateError(
                "Session backend unavailable.", "session_unavailable", 503
            ) from exc
        return payload

    async def _get_payload(self, session_id: str) -> SessionPayload | None:
        """Fetch and decode a payload, treating corrupt entries as absent."""
        try:
            raw_payload = await self._redis.get(self._session_key(session_id))
        except RedisError as exc:
            raise SessionStateError(
                "Session backend unavailable.", "session_unavailable", 503
            ) from exc
        if raw_payload is None:
            return None
        try:
            return SessionPayload(**json.loads(raw_payload))
        except (json.JSONDecodeError, TypeError):
            return None

    @staticmethod
    def _session_key(session_id: str) -> str:
        """Build Redis key from the hashed session id."""
        digest = sha256(session_id.encode("utf-8")).hexdigest()
        return f"session:{digest}"


@lru_cache
def get_redis_client() -> Redis:
    """Create and cache Redis client for sessions and the change feed."""
    settings = get_settings()
    return redis_async.from_url(settings.redis.url, decode_responses=True)


@lru_cache
def get_session_service() -> SessionService:
    """Create and cache session service."""
    settings = get_settings()
    return SessionService(
        redis_client=get_redis_client(),
        session_ttl_seconds=settings.identity.session_ttl_seconds,
    )
