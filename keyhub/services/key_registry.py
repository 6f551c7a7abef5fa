"""Live, ordered projection of one principal's API keys."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol
from uuid import UUID

import structlog

from keyhub.core.api_keys import KeyGenerator
from keyhub.core.change_feed import ChangeEvent, ChangeFeed, ChangeFeedError, Subscription
from keyhub.services.credential_store import ApiKeyRecord, CredentialStoreError

logger = structlog.get_logger(__name__)

VALIDATION_FAILED = "validation_failed"
OPERATION_FAILED = "operation_failed"
KEY_NOT_FOUND = "key_not_found"


class RegistryState(str, Enum):
    """Lifecycle of the registry snapshot."""

    IDLE = "idle"
    MUTATING = "mutating"
    REFRESHING = "refreshing"
    ERROR = "error"


@dataclass(frozen=True)
class RegistryOutcome:
    """Result of a registry operation; failures carry a machine-readable code."""

    ok: bool
    message: str
    code: str | None = None
    record: ApiKeyRecord | None = None

    @classmethod
    def success(cls, message: str, record: ApiKeyRecord | None = None) -> RegistryOutcome:
        """Build a successful outcome."""
        return cls(ok=True, message=message, record=record)

    @classmethod
    def failure(cls, code: str, message: str) -> RegistryOutcome:
        """Build a failed outcome."""
        return cls(ok=False, message=message, code=code)


class OwnerKeyStore(Protocol):
    """Owner-scoped persistence operations the registry relies on."""

    @property
    def user_id(self) -> UUID:
        """Owning principal."""

    async def list_keys(self) -> list[ApiKeyRecord]:
        """Owned rows, newest first."""

    async def insert(self, name: str, key: str) -> ApiKeyRecord:
        """Insert an owned row."""

    async def update_name(self, key_id: UUID, name: str) -> bool:
        """Rename an owned row."""

    async def delete(self, key_id: UUID) -> bool:
        """Delete an owned row."""


SnapshotListener = Callable[[tuple[ApiKeyRecord, ...]], Awaitable[None]]


class KeyRegistry:
    """Mediate key mutations and keep a snapshot converged with the store.

    Every successful mutation and every change-feed notification triggers the same
    full refresh; the snapshot is only ever replaced by a successful listing, so a
    failed operation leaves the last good snapshot in place.
    """

    def __init__(
        self,
        store: OwnerKeyStore,
        generator: KeyGenerator,
        change_feed: ChangeFeed | None = None,
    ) -> None:
        self._store = store
        self._generator = generator
        self._change_feed = change_feed
        self._snapshot: tuple[ApiKeyRecord, ...] = ()
        self._state = RegistryState.IDLE
        self._listeners: list[SnapshotListener] = []
        self._subscription: Subscription | None = None

    @property
    def snapshot(self) -> tuple[ApiKeyRecord, ...]:
        """Return the keys as of the last successful refresh."""
        return self._snapshot

    @property
    def state(self) -> RegistryState:
        """Return the current lifecycle state."""
        return self._state

    def add_listener(self, listener: SnapshotListener) -> None:
        """Call listener with the new snapshot after every successful refresh."""
        self._listeners.append(listener)

    async def start(self) -> None:
        """Subscribe to the change feed so remote changes trigger refreshes."""
        if self._change_feed is None or self._subscription is not None:
            return
        try:
            self._subscription = await self._change_feed.subscribe(self._on_change)
        except ChangeFeedError:
            logger.warning("api_keys_change_feed_unavailable", user_id=str(self._store.user_id))

    async def close(self) -> None:
        """Stop receiving change notifications."""
        if self._subscription is None:
            return
        subscription, self._subscription = self._subscription, None
        await subscription.close()

    async def refresh(self) -> RegistryOutcome:
        """Reload the owner's keys, keeping the previous snapshot on failure."""
        self._state = RegistryState.REFRESHING
        try:
            records = await self._store.list_keys()
        except CredentialStoreError:
            logger.warning("api_keys_fetch_failed", user_id=str(self._store.user_id))
            self._state = RegistryState.ERROR
            return RegistryOutcome.failure(OPERATION_FAILED, "Failed to load API keys")

        self._snapshot = tuple(records)
        self._state = RegistryState.IDLE
        for listener in list(self._listeners):
            await listener(self._snapshot)
        return RegistryOutcome.success("API keys loaded")

    async def create(self, name: str) -> RegistryOutcome:
        """Create a key named `name` for the owner."""
        cleaned = name.strip()
        if not cleaned:
            return RegistryOutcome.failure(VALIDATION_FAILED, "Key name cannot be empty")

        self._state = RegistryState.MUTATING
        try:
            record = await self._store.insert(name=cleaned, key=self._generator.generate())
        except CredentialStoreError:
            logger.error("api_key_create_failed", user_id=str(self._store.user_id))
            self._state = RegistryState.ERROR
            return RegistryOutcome.failure(OPERATION_FAILED, "Failed to create API key")

        await self._refresh_after_mutation()
        return RegistryOutcome.success("API key created successfully", record=record)

    async def rename(self, key_id: UUID, new_name: str) -> RegistryOutcome:
        """Rename an owned key."""
        cleaned = new_name.strip()
        if not cleaned:
            return RegistryOutcome.failure(VALIDATION_FAILED, "Key name cannot be empty")

        self._state = RegistryState.MUTATING
        try:
            updated = await self._store.update_name(key_id=key_id, name=cleaned)
        except CredentialStoreError:
            logger.error("api_key_rename_failed", key_id=str(key_id))
            self._state = RegistryState.ERROR
            return RegistryOutcome.failure(OPERATION_FAILED, "Failed to update key name")

        if not updated:
            self._state = RegistryState.IDLE
            return RegistryOutcome.failure(KEY_NOT_FOUND, "API key not found")
        await self._refresh_after_mutation()
        return RegistryOutcome.success("API key name updated")

    async def delete(self, key_id: UUID) -> RegistryOutcome:
        """Permanently delete an owned key."""
        self._state = RegistryState.MUTATING
        try:
            deleted = await self._store.delete(key_id=key_id)
        except CredentialStoreError:
            logger.error("api_key_delete_failed", key_id=str(key_id))
            self._state = RegistryState.ERROR
            return RegistryOutcome.failure(OPERATION_FAILED, "Failed to delete API key")

        if not deleted:
            self._state = RegistryState.IDLE
            return RegistryOutcome.failure(KEY_NOT_FOUND, "API key not found")
        await self._refresh_after_mutation()
        return RegistryOutcome.success("API key deleted successfully")

    async def _refresh_after_mutation(self) -> None:
        outcome = await self.refresh()
        if not outcome.ok:
            logger.warning("api_keys_refresh_after_mutation_failed")

    async def _on_change(self, event: ChangeEvent) -> None:
        logger.debug("api_keys_change_received", event_type=event.event, key_id=event.key_id)
        await self.refresh()
