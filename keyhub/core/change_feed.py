"""Publish/subscribe change notifications for the api_keys table."""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from functools import lru_cache
from typing import Any, Literal, Protocol

import structlog
from redis.asyncio.client import PubSub, Redis
from redis.exceptions import RedisError

from keyhub.config import get_settings
from keyhub.core.sessions import get_redis_client

logger = structlog.get_logger(__name__)

ChangeEventType = Literal["insert", "update", "delete"]
_EVENT_TYPES = {"insert", "update", "delete"}


@dataclass(frozen=True)
class ChangeEvent:
    """Row-level change notification."""

    event: ChangeEventType
    key_id: str
    user_id: str
    table: str = "api_keys"

    def to_json(self) -> str:
        """Serialize event for transport."""
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> ChangeEvent:
        """Parse a transported event, raising ValueError on malformed payloads."""
        payload: Any = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError("Change event payload must be an object.")
        event = payload.get("event")
        if event not in _EVENT_TYPES:
            raise ValueError(f"Unknown change event type: {event!r}.")
        try:
            return cls(
                event=event,
                key_id=str(payload["key_id"]),
                user_id=str(payload["user_id"]),
                table=str(payload.get("table", "api_keys")),
            )
        except KeyError as exc:
            raise ValueError(f"Change event missing field: {exc.args[0]}.") from exc


ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]


class ChangeFeedError(Exception):
    """Raised when change notifications cannot be published or subscribed."""


class Subscription(Protocol):
    """Handle returned by `ChangeFeed.subscribe`."""

    async def close(self) -> None:
        """Stop delivering events to the handler."""


class ChangeFeed(Protocol):
    """Change notification channel consumed by the key registry."""

    async def publish(self, event: ChangeEvent) -> None:
        """Broadcast an event to every subscriber."""

    async def subscribe(self, handler: ChangeHandler) -> Subscription:
        """Register a handler for all future events."""


class _InMemorySubscription:
    def __init__(self, feed: InMemoryChangeFeed, handler: ChangeHandler) -> None:
        self._feed = feed
        self._handler = handler

    async def close(self) -> None:
        self._feed._discard(self._handler)


class InMemoryChangeFeed:
    """Process-local change feed for single-process deployments.

    Selected with `REDIS__CHANGE_FEED_BACKEND=memory`; events never leave the
    process, so every registry must live in the same worker.
    """

    def __init__(self) -> None:
        self._handlers: list[ChangeHandler] = []

    @property
    def subscriber_count(self) -> int:
        """Return the number of active subscriptions."""
        return len(self._handlers)

    async def publish(self, event: ChangeEvent) -> None:
        """Deliver the event to each handler in subscription order."""
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception:
                logger.exception("change_handler_failed", event_type=event.event)

    async def subscribe(self, handler: ChangeHandler) -> Subscription:
        """Register handler and return its subscription."""
        self._handlers.append(handler)
        return _InMemorySubscription(self, handler)

    def _discard(self, handler: ChangeHandler) -> None:
        with contextlib.suppress(ValueError):
            self._handlers.remove(handler)


class _RedisSubscription:
    def __init__(self, pubsub: PubSub, task: asyncio.Task[None], channel: str) -> None:
        self._pubsub = pubsub
        self._task = task
        self._channel = channel

    async def close(self) -> None:
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("change_feed_pump_failed", channel=self._channel)
        try:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
        except RedisError:
            logger.warning("change_feed_unsubscribe_failed", channel=self._channel)


class RedisChangeFeed:
    """Redis pub/sub change feed shared by every process and browser tab."""

    def __init__(self, redis_client: Redis, channel: str) -> None:
        self._redis = redis_client
        self._channel = channel

    async def publish(self, event: ChangeEvent) -> None:
        """Publish the event to the configured channel."""
        try:
            await self._redis.publish(self._channel, event.to_json())
        except RedisError as exc:
            raise ChangeFeedError("Change feed unavailable.") from exc

    async def subscribe(self, handler: ChangeHandler) -> Subscription:
        """Subscribe to the channel and pump messages to handler in a background task."""
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(self._channel)
        except RedisError as exc:
            raise ChangeFeedError("Change feed unavailable.") from exc
        task = asyncio.create_task(self._pump(pubsub, handler))
        logger.info("change_feed_subscribed", channel=self._channel)
        return _RedisSubscription(pubsub, task, self._channel)

    async def _pump(self, pubsub: PubSub, handler: ChangeHandler) -> None:
        try:
            await self._deliver(pubsub, handler)
        except RedisError as exc:
            logger.warning(
                "change_feed_connection_lost", channel=self._channel, error=type(exc).__name__
            )

    async def _deliver(self, pubsub: PubSub, handler: ChangeHandler) -> None:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                event = ChangeEvent.from_json(message["data"])
            except ValueError:
                logger.warning("change_event_malformed", channel=self._channel)
                continue
            try:
                await handler(event)
            except Exception:
                logger.exception("change_handler_failed", event_type=event.event)


@lru_cache
def get_change_feed() -> ChangeFeed:
    """Create and cache the configured change feed."""
    settings = get_settings()
    if settings.redis.change_feed_backend == "memory":
        return InMemoryChangeFeed()
    return RedisChangeFeed(
        redis_client=get_redis_client(),
        channel=settings.redis.change_feed_channel,
    )
