"""Signed-in dashboard routes for managing the caller's API keys."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Annotated
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse

from keyhub.core.api_keys import KeyGenerator, get_key_generator
from keyhub.core.change_feed import ChangeFeed, get_change_feed
from keyhub.core.sessions import SessionContext
from keyhub.dependencies import require_session
from keyhub.error_handlers import error_response
from keyhub.schemas.api_key import (
    ApiKeyItem,
    DashboardResponse,
    KeyCreateResponse,
    KeyListResponse,
    KeyNameRequest,
)
from keyhub.services.credential_store import ApiKeyRecord, CredentialStore, get_credential_store
from keyhub.services.key_registry import (
    KEY_NOT_FOUND,
    VALIDATION_FAILED,
    KeyRegistry,
    RegistryOutcome,
    RegistryState,
)

router = APIRouter(prefix="/dashboards", tags=["dashboard"])

logger = structlog.get_logger(__name__)

KEEPALIVE_SECONDS = 15.0

_STALE_NOTICE = "The key list could not be refreshed; reload to see current keys."

_STATUS_BY_OUTCOME_CODE = {
    VALIDATION_FAILED: 400,
    KEY_NOT_FOUND: 404,
}


def get_key_registry(
    session: Annotated[SessionContext, Depends(require_session)],
    store: Annotated[CredentialStore, Depends(get_credential_store)],
    generator: Annotated[KeyGenerator, Depends(get_key_generator)],
    change_feed: Annotated[ChangeFeed, Depends(get_change_feed)],
) -> KeyRegistry:
    """Build a registry scoped to the signed-in principal."""
    return KeyRegistry(
        store=store.for_owner(session.user_id),
        generator=generator,
        change_feed=change_feed,
    )


def _items(snapshot: tuple[ApiKeyRecord, ...]) -> list[ApiKeyItem]:
    return [ApiKeyItem.from_record(record) for record in snapshot]


def _mutation_result(
    registry: KeyRegistry, outcome: RegistryOutcome
) -> tuple[list[ApiKeyItem] | None, str]:
    """Return the refreshed keys, or None with a notice when the refresh failed."""
    if registry.state is RegistryState.ERROR:
        return None, f"{outcome.message}. {_STALE_NOTICE}"
    return _items(registry.snapshot), outcome.message


def _outcome_error(outcome: RegistryOutcome) -> JSONResponse:
    status_code = _STATUS_BY_OUTCOME_CODE.get(outcome.code or "", 500)
    return error_response(status_code, outcome.message, outcome.code or "operation_failed")


def _sse_event(event: str, payload: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, default=str)}\n\n"


@router.get("", response_model=DashboardResponse)
async def dashboard(
    session: Annotated[SessionContext, Depends(require_session)],
) -> DashboardResponse:
    """Return the signed-in principal."""
    return DashboardResponse(user_id=session.user_id, email=session.email)


@router.get("/keys", response_model=KeyListResponse)
async def list_keys(
    registry: Annotated[KeyRegistry, Depends(get_key_registry)],
) -> KeyListResponse | JSONResponse:
    """Return the caller's keys, newest first."""
    outcome = await registry.refresh()
    if not outcome.ok:
        return _outcome_error(outcome)
    return KeyListResponse(keys=_items(registry.snapshot))


@router.get("/keys/stream")
async def stream_keys(
    request: Request,
    registry: Annotated[KeyRegistry, Depends(get_key_registry)],
) -> StreamingResponse:
    """Push a fresh snapshot whenever the caller's keys change."""
    return StreamingResponse(
        _snapshot_events(request, registry),
        media_type="text/event-stream",
        headers={"X-Accel-Buffering": "no"},
    )


async def _snapshot_events(request: Request, registry: KeyRegistry) -> AsyncIterator[str]:
    queue: asyncio.Queue[tuple[ApiKeyRecord, ...]] = asyncio.Queue()

    async def enqueue(snapshot: tuple[ApiKeyRecord, ...]) -> None:
        await queue.put(snapshot)

    registry.add_listener(enqueue)
    await registry.start()
    try:
        outcome = await registry.refresh()
        if not outcome.ok:
            yield _sse_event("error", {"error": outcome.message, "code": outcome.code})
        while not await request.is_disconnected():
            try:
                snapshot = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            items = [item.model_dump(mode="json") for item in _items(snapshot)]
            yield _sse_event("snapshot", {"keys": items})
    finally:
        await registry.close()
        logger.debug("api_keys_stream_closed")


@router.post("/keys", response_model=KeyCreateResponse, status_code=201)
async def create_key(
    payload: KeyNameRequest,
    registry: Annotated[KeyRegistry, Depends(get_key_registry)],
) -> KeyCreateResponse | JSONResponse:
    """Create a key for the caller."""
    outcome = await registry.create(payload.name)
    if not outcome.ok or outcome.record is None:
        return _outcome_error(outcome)
    keys, notice = _mutation_result(registry, outcome)
    return KeyCreateResponse(
        key=ApiKeyItem.from_record(outcome.record), keys=keys, notice=notice
    )


@router.patch("/keys/{key_id}", response_model=KeyListResponse)
async def rename_key(
    key_id: UUID,
    payload: KeyNameRequest,
    registry: Annotated[KeyRegistry, Depends(get_key_registry)],
) -> KeyListResponse | JSONResponse:
    """Rename one of the caller's keys."""
    outcome = await registry.rename(key_id, payload.name)
    if not outcome.ok:
        return _outcome_error(outcome)
    keys, notice = _mutation_result(registry, outcome)
    return KeyListResponse(keys=keys, notice=notice)


@router.delete("/keys/{key_id}", response_model=KeyListResponse)
async def delete_key(
    key_id: UUID,
    registry: Annotated[KeyRegistry, Depends(get_key_registry)],
) -> KeyListResponse | JSONResponse:
    """Permanently delete one of the caller's keys."""
    outcome = await registry.delete(key_id)
    if not outcome.ok:
        return _outcome_error(outcome)
    keys, notice = _mutation_result(registry, outcome)
    return KeyListResponse(keys=keys, notice=notice)
