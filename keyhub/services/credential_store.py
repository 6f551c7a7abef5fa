"""Persistence adapter for the api_keys table."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from uuid import UUID

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keyhub.core.change_feed import (
    ChangeEvent,
    ChangeEventType,
    ChangeFeed,
    ChangeFeedError,
    get_change_feed,
)
from keyhub.db.session import get_session_factory
from keyhub.models.api_key import APIKey

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ApiKeyRecord:
    """Detached, immutable view of one api_keys row."""

    id: UUID
    name: str
    key: str
    user_id: UUID
    created_at: datetime

    @classmethod
    def from_row(cls, row: APIKey) -> ApiKeyRecord:
        """Copy ORM row values into a record."""
        return cls(
            id=row.id,
            name=row.name,
            key=row.key,
            user_id=row.user_id,
            created_at=row.created_at,
        )


class CredentialStoreError(Exception):
    """Raised when the backing store cannot complete an operation."""


class CredentialStore:
    """Sole reader and writer of the api_keys table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        change_feed: ChangeFeed | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._change_feed = change_feed

    async def find_by_key(self, raw_key: str) -> ApiKeyRecord | None:
        """Look up a key by exact token match across all owners."""
        statement = select(APIKey).where(APIKey.key == raw_key)
        try:
            async with self._session_factory() as session:
                result = await session.execute(statement)
                row = result.scalar_one_or_none()
        except (SQLAlchemyError, OSError) as exc:
            raise CredentialStoreError("API key lookup failed.") from exc
        return ApiKeyRecord.from_row(row) if row is not None else None

    def for_owner(self, user_id: UUID) -> OwnerScopedStore:
        """Return a handle whose reads and writes only touch rows owned by user_id."""
        return OwnerScopedStore(store=self, user_id=user_id)

    def session(self) -> AsyncSession:
        """Open a new database session."""
        return self._session_factory()

    async def publish(self, event_type: ChangeEventType, key_id: UUID, user_id: UUID) -> None:
        """Announce a committed mutation on the change feed."""
        if self._change_feed is None:
            return
        event = ChangeEvent(event=event_type, key_id=str(key_id), user_id=str(user_id))
        try:
            await self._change_feed.publish(event)
        except ChangeFeedError:
            logger.warning("change_feed_publish_failed", event_type=event_type, key_id=str(key_id))


class OwnerScopedStore:
    """Owner-scoped access to api_keys rows, equivalent to row-level security."""

    def __init__(self, store: CredentialStore, user_id: UUID) -> None:
        self._store = store
        self._user_id = user_id

    @property
    def user_id(self) -> UUID:
        """Return the owning principal id."""
        return self._user_id

    async def list_keys(self) -> list[ApiKeyRecord]:
        """List the owner's keys, newest first."""
        statement = (
            select(APIKey)
            .where(APIKey.user_id == self._user_id)
            .order_by(APIKey.created_at.desc(), APIKey.id.desc())
        )
        try:
            async with self._store.session() as session:
                result = await session.execute(statement)
                rows = list(result.scalars().all())
        except (SQLAlchemyError, OSError) as exc:
            raise CredentialStoreError("API key listing failed.") from exc
        return [ApiKeyRecord.from_row(row) for row in rows]

    async def insert(self, name: str, key: str) -> ApiKeyRecord:
        """Insert a key owned by this principal."""
        try:
            async with self._store.session() as session:
                row = APIKey(name=name, key=key, user_id=self._user_id)
                try:
                    session.add(row)
                    await session.flush()
                except Exception:
                    await session.rollback()
                    raise
                await session.commit()
                await session.refresh(row)
                record = ApiKeyRecord.from_row(row)
        except (SQLAlchemyError, OSError) as exc:
            raise CredentialStoreError("API key insert failed.") from exc
        await self._store.publish("insert", record.id, self._user_id)
        return record

    async def update_name(self, key_id: UUID, name: str) -> bool:
        """Rename one owned key; return False when no owned row matched."""
        statement = (
            update(APIKey)
            .where(APIKey.id == key_id, APIKey.user_id == self._user_id)
            .values(name=name)
            .returning(APIKey.id)
        )
        updated = await self._execute_write(statement, failure="API key update failed.")
        if updated:
            await self._store.publish("update", key_id, self._user_id)
        return updated

    async def delete(self, key_id: UUID) -> bool:
        """Permanently delete one owned key; return False when no owned row matched."""
        statement = (
            delete(APIKey)
            .where(APIKey.id == key_id, APIKey.user_id == self._user_id)
            .returning(APIKey.id)
        )
        deleted = await self._execute_write(statement, failure="API key delete failed.")
        if deleted:
            await self._store.publish("delete", key_id, self._user_id)
        return deleted

    async def _execute_write(self, statement, failure: str) -> bool:
        try:
            async with self._store.session() as session:
                try:
                    result = await session.execute(statement)
                    matched = result.scalar_one_or_none()
                except Exception:
                    await session.rollback()
                    raise
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise CredentialStoreError(failure) from exc
        return matched is not None


@lru_cache
def get_credential_store() -> CredentialStore:
    """Create and cache the credential store bound to the app database and change feed."""
    return CredentialStore(session_factory=get_session_factory(), change_feed=get_change_feed())
