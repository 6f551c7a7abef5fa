"""Shared integration-test fixtures using Postgres and Redis testcontainers."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Callable, Iterator
from typing import Any

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import delete
from testcontainers.postgres import PostgresContainer
from testcontainers.redis import RedisContainer

from docker.errors import DockerException


def _clear_dependency_caches() -> None:
    """Clear all singleton/lru-cache dependencies between test phases."""
    from keyhub.config import get_settings
    from keyhub.core.api_keys import get_key_generator
    from keyhub.core.change_feed import get_change_feed
    from keyhub.core.identity import get_identity_client
    from keyhub.core.readme import get_readme_fetcher
    from keyhub.core.sessions import get_redis_client, get_session_service
    from keyhub.core.summarizer import get_readme_summarizer
    from keyhub.db.session import get_engine, get_session_factory
    from keyhub.services.auth_service import get_auth_service
    from keyhub.services.credential_store import get_credential_store
    from keyhub.services.public_api_service import (
        get_key_validation_service,
        get_summary_service,
    )

    get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()
    get_redis_client.cache_clear()
    get_session_service.cache_clear()
    get_change_feed.cache_clear()
    get_key_generator.cache_clear()
    get_identity_client.cache_clear()
    get_readme_fetcher.cache_clear()
    get_readme_summarizer.cache_clear()
    get_auth_service.cache_clear()
    get_credential_store.cache_clear()
    get_key_validation_service.cache_clear()
    get_summary_service.cache_clear()


async def _dispose_async_singletons() -> None:
    """Dispose loop-bound async resources before changing event loops."""
    from keyhub.core.sessions import get_redis_client
    from keyhub.db.session import dispose_engine, get_engine

    if get_redis_client.cache_info().currsize:
        await get_redis_client().aclose()
    if get_engine.cache_info().currsize:
        await dispose_engine()


def _redis_connection_url(redis: RedisContainer) -> str:
    """Return a redis:// URL for the container."""
    host = redis.get_container_host_ip()
    port = redis.get_exposed_port(6379)
    return f"redis://{host}:{port}/0"


def _postgres_async_url(postgres: PostgresContainer) -> str:
    """Return a postgresql+asyncpg URL across testcontainers versions."""
    try:
        postgres_url = postgres.get_connection_url(driver=None)
    except TypeError:
        postgres_url = postgres.get_connection_url()

    if postgres_url.startswith("postgresql+"):
        postgres_url = "postgresql://" + postgres_url.split("://", 1)[1]

    return postgres_url.replace("postgresql://", "postgresql+asyncpg://", 1)


def _set_env_values(env_values: dict[str, str]) -> Callable[[], None]:
    """Apply env vars and return a restore callback."""
    original = {key: os.environ.get(key) for key in env_values}
    os.environ.update(env_values)

    def _restore() -> None:
        for key, value in original.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    return _restore


@pytest.fixture(scope="session")
def integration_env() -> Iterator[dict[str, str]]:
    """Start Postgres/Redis containers and configure app settings for integration tests."""
    try:
        postgres = PostgresContainer("postgres:16")
        redis = RedisContainer("redis:7")
        postgres.start()
        redis.start()
    except DockerException as exc:
        if os.environ.get("CI", "").lower() in {"1", "true", "yes"}:
            pytest.fail(f"Docker daemon unavailable in CI for testcontainers-backed tests: {exc}")
        pytest.skip(f"Docker daemon unavailable for testcontainers-backed tests: {exc}")

    database_url = _postgres_async_url(postgres)
    redis_url = _redis_connection_url(redis)

    restore_env = _set_env_values(
        {
            "APP__ENVIRONMENT": "development",
            "APP__SERVICE": "keyhub",
            "APP__LOG_LEVEL": "INFO",
            "DATABASE__URL": database_url,
            "REDIS__URL": redis_url,
            "IDENTITY__BASE_URL": "https://identity.example.com",
            "IDENTITY__ANON_KEY": "integration-anon-key",
            "IDENTITY__SITE_URL": "http://testserver",
            "IDENTITY__COOKIE_SECURE": "false",
            "LLM__OPENAI_API_KEY": "sk-integration",
        }
    )
    _clear_dependency_caches()

    alembic_cfg = Config("alembic.ini")
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(alembic_cfg, "head")

    try:
        yield {"database_url": database_url, "redis_url": redis_url}
    finally:
        try:
            _clear_dependency_caches()
        finally:
            restore_env()
            postgres.stop()
            redis.stop()


@pytest.fixture(scope="function")
async def real_backends(integration_env: dict[str, str]) -> AsyncIterator[dict[str, Any]]:
    """Clear the api_keys table and Redis; isolate async singletons per event loop."""
    from keyhub.core.sessions import get_redis_client
    from keyhub.db.session import get_session_factory
    from keyhub.models.api_key import APIKey

    await _dispose_async_singletons()
    _clear_dependency_caches()

    session_factory = get_session_factory()
    async with session_factory() as session:
        await session.execute(delete(APIKey))
        await session.commit()

    redis_client = get_redis_client()
    await redis_client.flushdb()
    try:
        yield {
            **integration_env,
            "session_factory": session_factory,
            "redis_client": redis_client,
        }
    finally:
        await _dispose_async_singletons()
        _clear_dependency_caches()
