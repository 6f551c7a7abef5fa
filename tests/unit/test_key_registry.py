"""Unit tests for the owner-scoped key registry."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

import pytest

from keyhub.core.api_keys import KeyGenerator
from keyhub.core.change_feed import (
    ChangeEvent,
    ChangeFeedError,
    ChangeHandler,
    InMemoryChangeFeed,
    Subscription,
)
from keyhub.services.credential_store import ApiKeyRecord, CredentialStoreError
from keyhub.services.key_registry import (
    KEY_NOT_FOUND,
    OPERATION_FAILED,
    VALIDATION_FAILED,
    KeyRegistry,
    RegistryState,
)


class _FakeOwnerStore:
    """In-memory owner-scoped store with failure switches."""

    def __init__(self, user_id: UUID | None = None) -> None:
        self._user_id = user_id or uuid4()
        self.rows: dict[UUID, ApiKeyRecord] = {}
        self.fail_list = False
        self.fail_insert = False
        self.fail_update = False
        self.fail_delete = False
        self.list_calls = 0
        self._clock = datetime(2026, 1, 1, tzinfo=UTC)

    @property
    def user_id(self) -> UUID:
        return self._user_id

    async def list_keys(self) -> list[ApiKeyRecord]:
        self.list_calls += 1
        if self.fail_list:
            raise CredentialStoreError("list failed")
        return sorted(self.rows.values(), key=lambda row: row.created_at, reverse=True)

    async def insert(self, name: str, key: str) -> ApiKeyRecord:
        if self.fail_insert:
            raise CredentialStoreError("insert failed")
        self._clock += timedelta(seconds=1)
        record = ApiKeyRecord(
            id=uuid4(), name=name, key=key, user_id=self._user_id, created_at=self._clock
        )
        self.rows[record.id] = record
        return record

    async def update_name(self, key_id: UUID, name: str) -> bool:
        if self.fail_update:
            raise CredentialStoreError("update failed")
        row = self.rows.get(key_id)
        if row is None:
            return False
        self.rows[key_id] = ApiKeyRecord(
            id=row.id, name=name, key=row.key, user_id=row.user_id, created_at=row.created_at
        )
        return True

    async def delete(self, key_id: UUID) -> bool:
        if self.fail_delete:
            raise CredentialStoreError("delete failed")
        return self.rows.pop(key_id, None) is not None


class _FailingChangeFeed:
    """Change feed whose subscriptions always fail."""

    async def publish(self, event: ChangeEvent) -> None:
        del event

    async def subscribe(self, handler: ChangeHandler) -> Subscription:
        del handler
        raise ChangeFeedError("unavailable")


def _registry(store: _FakeOwnerStore, feed: InMemoryChangeFeed | None = None) -> KeyRegistry:
    return KeyRegistry(store=store, generator=KeyGenerator(), change_feed=feed)


@pytest.mark.asyncio
async def test_create_generates_token_and_refreshes_snapshot() -> None:
    """Creating a key stores a fresh token under the trimmed name."""
    store = _FakeOwnerStore()
    registry = _registry(store)

    outcome = await registry.create("  CI key  ")

    assert outcome.ok is True
    assert outcome.message == "API key created successfully"
    assert outcome.record is not None
    assert outcome.record.name == "CI key"
    assert KeyGenerator().is_valid_format(outcome.record.key)
    assert [row.id for row in registry.snapshot] == [outcome.record.id]
    assert registry.state is RegistryState.IDLE


@pytest.mark.asyncio
async def test_create_rejects_blank_name_without_touching_store() -> None:
    """Whitespace-only names fail validation before any write."""
    store = _FakeOwnerStore()
    registry = _registry(store)

    outcome = await registry.create("   ")

    assert outcome.ok is False
    assert outcome.code == VALIDATION_FAILED
    assert outcome.message == "Key name cannot be empty"
    assert store.rows == {}
    assert store.list_calls == 0


@pytest.mark.asyncio
async def test_create_failure_keeps_previous_snapshot() -> None:
    """A failed insert leaves the last good snapshot in place."""
    store = _FakeOwnerStore()
    registry = _registry(store)
    await registry.create("first")
    before = registry.snapshot

    store.fail_insert = True
    outcome = await registry.create("second")

    assert outcome.ok is False
    assert outcome.code == OPERATION_FAILED
    assert outcome.message == "Failed to create API key"
    assert registry.snapshot == before
    assert registry.state is RegistryState.ERROR


@pytest.mark.asyncio
async def test_snapshot_is_ordered_newest_first() -> None:
    """Listing order is by creation time, most recent first."""
    store = _FakeOwnerStore()
    registry = _registry(store)
    await registry.create("older")
    await registry.create("newer")

    assert [row.name for row in registry.snapshot] == ["newer", "older"]


@pytest.mark.asyncio
async def test_rename_updates_name_and_reports_missing_keys() -> None:
    """Rename changes only the name and reports unknown ids as not found."""
    store = _FakeOwnerStore()
    registry = _registry(store)
    created = await registry.create("old name")
    assert created.record is not None

    renamed = await registry.rename(created.record.id, "new name")
    missing = await registry.rename(uuid4(), "whatever")

    assert renamed.ok is True
    assert renamed.message == "API key name updated"
    assert registry.snapshot[0].name == "new name"
    assert registry.snapshot[0].key == created.record.key
    assert missing.ok is False
    assert missing.code == KEY_NOT_FOUND


@pytest.mark.asyncio
async def test_rename_rejects_blank_name() -> None:
    """Blank rename targets are rejected."""
    store = _FakeOwnerStore()
    registry = _registry(store)
    created = await registry.create("name")
    assert created.record is not None

    outcome = await registry.rename(created.record.id, "")

    assert outcome.code == VALIDATION_FAILED
    assert store.rows[created.record.id].name == "name"


@pytest.mark.asyncio
async def test_rename_store_failure_is_operation_failed() -> None:
    """Store failures during rename surface as operation failures."""
    store = _FakeOwnerStore()
    registry = _registry(store)
    created = await registry.create("name")
    assert created.record is not None
    store.fail_update = True

    outcome = await registry.rename(created.record.id, "other")

    assert outcome.code == OPERATION_FAILED
    assert outcome.message == "Failed to update key name"


@pytest.mark.asyncio
async def test_delete_removes_key_from_snapshot() -> None:
    """Deleting a key removes it from the refreshed snapshot."""
    store = _FakeOwnerStore()
    registry = _registry(store)
    keep = await registry.create("keep")
    drop = await registry.create("drop")
    assert keep.record is not None and drop.record is not None

    outcome = await registry.delete(drop.record.id)

    assert outcome.ok is True
    assert outcome.message == "API key deleted successfully"
    assert [row.id for row in registry.snapshot] == [keep.record.id]


@pytest.mark.asyncio
async def test_delete_failure_keeps_snapshot() -> None:
    """Store failures during delete keep the snapshot unchanged."""
    store = _FakeOwnerStore()
    registry = _registry(store)
    created = await registry.create("name")
    assert created.record is not None
    store.fail_delete = True

    outcome = await registry.delete(created.record.id)

    assert outcome.code == OPERATION_FAILED
    assert outcome.message == "Failed to delete API key"
    assert len(registry.snapshot) == 1


@pytest.mark.asyncio
async def test_refresh_failure_reports_and_keeps_snapshot() -> None:
    """A failed listing keeps the previous snapshot and reports failure."""
    store = _FakeOwnerStore()
    registry = _registry(store)
    await registry.create("name")
    store.fail_list = True

    outcome = await registry.refresh()

    assert outcome.ok is False
    assert outcome.message == "Failed to load API keys"
    assert len(registry.snapshot) == 1


@pytest.mark.asyncio
async def test_mutation_succeeds_even_when_follow_up_refresh_fails() -> None:
    """The mutation outcome stands when only the refresh afterwards fails."""
    store = _FakeOwnerStore()
    registry = _registry(store)
    store.fail_list = True

    outcome = await registry.create("name")

    assert outcome.ok is True
    assert registry.snapshot == ()


@pytest.mark.asyncio
async def test_change_feed_event_triggers_refresh_and_notifies_listeners() -> None:
    """Remote changes refresh the snapshot and reach listeners."""
    store = _FakeOwnerStore()
    feed = InMemoryChangeFeed()
    registry = _registry(store, feed)
    seen: list[tuple[ApiKeyRecord, ...]] = []

    async def _listener(snapshot: tuple[ApiKeyRecord, ...]) -> None:
        seen.append(snapshot)

    registry.add_listener(_listener)
    await registry.start()
    remote = await store.insert(name="from another tab", key=KeyGenerator().generate())
    await feed.publish(
        ChangeEvent(event="insert", key_id=str(remote.id), user_id=str(store.user_id))
    )

    assert [row.id for row in registry.snapshot] == [remote.id]
    assert seen and seen[-1] == registry.snapshot

    await registry.close()
    assert feed.subscriber_count == 0


@pytest.mark.asyncio
async def test_start_tolerates_unavailable_change_feed() -> None:
    """The registry still works when it cannot subscribe to changes."""
    store = _FakeOwnerStore()
    registry = KeyRegistry(store=store, generator=KeyGenerator(), change_feed=_FailingChangeFeed())

    await registry.start()
    outcome = await registry.create("name")

    assert outcome.ok is True
    await registry.close()
