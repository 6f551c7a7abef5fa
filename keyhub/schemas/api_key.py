"""Dashboard API key request/response schemas."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from keyhub.core.api_keys import KeyGenerator
from keyhub.services.credential_store import ApiKeyRecord


class KeyNameRequest(BaseModel):
    """Create or rename payload; blank names are rejected by the registry."""

    name: str = Field(default="", max_length=128)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value: object) -> object:
        """Trim surrounding whitespace before the length limit applies."""
        if isinstance(value, str):
            return value.strip()
        return value


class ApiKeyItem(BaseModel):
    """One owned key as shown on the dashboard."""

    id: UUID
    name: str
    key: str
    masked_key: str
    created_at: datetime

    @classmethod
    def from_record(cls, record: ApiKeyRecord) -> ApiKeyItem:
        """Build an item with its masked rendering."""
        return cls(
            id=record.id,
            name=record.name,
            key=record.key,
            masked_key=KeyGenerator.mask(record.key),
            created_at=record.created_at,
        )


class KeyListResponse(BaseModel):
    """Current snapshot of owned keys, with an optional outcome notice.

    `keys` is null when a mutation succeeded but the snapshot could not be reloaded.
    """

    keys: list[ApiKeyItem] | None
    notice: str | None = None


class KeyCreateResponse(KeyListResponse):
    """Create response carrying the new key alongside the refreshed snapshot."""

    key: ApiKeyItem


class DashboardResponse(BaseModel):
    """Signed-in principal summary."""

    user_id: UUID
    email: str
