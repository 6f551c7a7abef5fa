"""Application settings and logging configuration."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any, Literal

import structlog
from pydantic import AnyHttpUrl, BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_CONTEXT: dict[str, str] = {"environment": "development", "service": "keyhub"}


class AppSettings(BaseModel):
    """Application identity and runtime settings."""

    environment: Literal["development", "staging", "production"]
    service: str = "keyhub"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class DatabaseSettings(BaseModel):
    """Database connection settings."""

    url: str = Field(description="Async SQLAlchemy URL using asyncpg driver.")

    @field_validator("url")
    @classmethod
    def validate_asyncpg_url(cls, value: str) -> str:
        """Ensure SQLAlchemy uses the asyncpg driver."""
        if not value.startswith("postgresql+asyncpg://"):
            raise ValueError("database.url must start with 'postgresql+asyncpg://'.")
        return value


class RedisSettings(BaseModel):
    """Redis connection settings."""

    url: str = Field(description="Redis URL.")
    change_feed_channel: str = "api_keys_changes"
    change_feed_backend: Literal["redis", "memory"] = "redis"

    @field_validator("url")
    @classmethod
    def validate_redis_url(cls, value: str) -> str:
        """Ensure the Redis URL uses a supported scheme."""
        if not value.startswith(("redis://", "rediss://")):
            raise ValueError("redis.url must start with 'redis://' or 'rediss://'.")
        return value


class IdentitySettings(BaseModel):
    """Magic-link identity provider and session cookie settings."""

    base_url: AnyHttpUrl = Field(description="GoTrue-compatible identity API base URL.")
    anon_key: SecretStr
    site_url: AnyHttpUrl
    session_ttl_seconds: int = Field(default=604800, ge=60)
    session_cookie_name: str = "keyhub_session"
    verifier_cookie_name: str = "keyhub_pkce"
    verifier_ttl_seconds: int = Field(default=600, ge=60)
    cookie_secure: bool = True


class KeySettings(BaseModel):
    """API key token format settings."""

    prefix: str = Field(default="pk_", min_length=1, max_length=8)


class GitHubSettings(BaseModel):
    """README retrieval settings."""

    raw_host: str = "raw.githubusercontent.com"
    branches: list[str] = Field(default_factory=lambda: ["main", "master"], min_length=1)
    fetch_timeout_seconds: float = Field(default=10.0, gt=0)


class LLMSettings(BaseModel):
    """Summarization model settings."""

    openai_api_key: SecretStr
    model: str = "gpt-3.5-turbo"
    temperature: float = Field(default=0.5, ge=0.0, le=2.0)


class RouteSettings(BaseModel):
    """Paths the session guard redirects between."""

    login_path: str = "/login"
    landing_path: str = "/dashboards"
    callback_path: str = "/auth/callback"


class Settings(BaseSettings):
    """Root application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app: AppSettings
    database: DatabaseSettings
    redis: RedisSettings
    identity: IdentitySettings
    llm: LLMSettings
    keys: KeySettings = KeySettings()
    github: GitHubSettings = GitHubSettings()
    routes: RouteSettings = RouteSettings()


def _standard_log_fields(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Inject required structured logging fields."""
    context_vars = structlog.contextvars.get_contextvars()
    event_dict.setdefault("correlation_id", str(context_vars.get("correlation_id", "unknown")))
    event_dict.setdefault("environment", _LOG_CONTEXT["environment"])
    event_dict.setdefault("service", _LOG_CONTEXT["service"])
    event_dict.setdefault("timestamp", datetime.now(UTC).isoformat())
    return event_dict


def configure_structlog(settings: Settings) -> None:
    """Configure structlog for JSON output with required fields."""
    _LOG_CONTEXT["environment"] = settings.app.environment
    _LOG_CONTEXT["service"] = settings.app.service

    log_level = getattr(logging, settings.app.log_level, logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _standard_log_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@lru_cache
def get_settings() -> Settings:
    """Load and cache application settings from environment variables."""
    return Settings()
