"""Third-party API key validation and README summarization."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Protocol

import structlog

from keyhub.core.api_keys import KeyGenerator, get_key_generator
from keyhub.core.readme import ReadmeFetcher, ReadmeNotFoundError, get_readme_fetcher
from keyhub.core.summarizer import (
    ReadmeSummarizer,
    ReadmeSummary,
    SummarizationError,
    get_readme_summarizer,
)
from keyhub.services.credential_store import (
    ApiKeyRecord,
    CredentialStoreError,
    get_credential_store,
)

logger = structlog.get_logger(__name__)


class PublicAPIError(Exception):
    """Raised for public endpoint failures that map to an error response."""

    def __init__(self, detail: str, code: str, status_code: int) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code
        self.status_code = status_code


class KeyLookup(Protocol):
    """Exact-match token lookup."""

    async def find_by_key(self, raw_key: str) -> ApiKeyRecord | None:
        """Return the row holding raw_key, if any."""


@dataclass(frozen=True)
class KeyValidationResult:
    """Validity of a submitted key; never carries the token or owner."""

    valid: bool
    message: str
    key_name: str | None = None


@dataclass(frozen=True)
class SummaryResult:
    """Generated README summary."""

    summary: str
    generated_at: datetime


def _missing(detail: str) -> PublicAPIError:
    return PublicAPIError(detail, "missing_field", 400)


def _internal_error() -> PublicAPIError:
    return PublicAPIError("Internal server error", "internal_error", 500)


async def _lookup(
    store: KeyLookup, generator: KeyGenerator, raw_key: str
) -> ApiKeyRecord | None:
    """Look up raw_key, treating tokens the generator could not have issued as unknown."""
    if not generator.is_valid_format(raw_key):
        return None
    try:
        return await store.find_by_key(raw_key)
    except CredentialStoreError as exc:
        logger.error("api_key_lookup_failed", error=str(exc))
        raise _internal_error() from exc


class KeyValidationService:
    """Check whether a submitted key exists."""

    def __init__(self, store: KeyLookup, generator: KeyGenerator | None = None) -> None:
        self._store = store
        self._generator = generator or KeyGenerator()

    async def validate(self, raw_key: str | None) -> KeyValidationResult:
        """Validate raw_key; unknown keys are a normal invalid result."""
        if not raw_key:
            raise _missing("API key is required")
        record = await _lookup(self._store, self._generator, raw_key)
        if record is None:
            return KeyValidationResult(valid=False, message="Invalid API key")
        return KeyValidationResult(valid=True, message="Valid API key", key_name=record.name)


class SummaryService:
    """Validate the caller key, fetch the README, and summarize it."""

    def __init__(
        self,
        store: KeyLookup,
        fetcher: ReadmeFetcher,
        summarizer: ReadmeSummarizer,
        generator: KeyGenerator | None = None,
    ) -> None:
        self._store = store
        self._generator = generator or KeyGenerator()
        self._fetcher = fetcher
        self._summarizer = summarizer

    async def summarize(self, raw_key: str | None, github_url: str | None) -> SummaryResult:
        """Summarize github_url's README on behalf of the holder of raw_key."""
        if not raw_key:
            raise _missing("API key is required in x-api-key header")
        if not github_url:
            raise _missing("GitHub URL is required")

        record = await _lookup(self._store, self._generator, raw_key)
        if record is None:
            raise PublicAPIError("Invalid API key", "invalid_api_key", 400)

        try:
            readme_content = await self._fetcher.fetch(github_url)
        except ReadmeNotFoundError as exc:
            raise PublicAPIError(str(exc), "readme_not_found", 500) from exc

        try:
            generated: ReadmeSummary = await self._summarizer.summarize(readme_content)
        except SummarizationError as exc:
            raise PublicAPIError(exc.detail, exc.code, 500) from exc

        logger.info("readme_summarized", key_id=str(record.id))
        return SummaryResult(summary=generated.summary, generated_at=generated.generated_at)


@lru_cache
def get_key_validation_service() -> KeyValidationService:
    """Create and cache key validation service."""
    return KeyValidationService(store=get_credential_store(), generator=get_key_generator())


@lru_cache
def get_summary_service() -> SummaryService:
    """Create and cache summary service."""
    return SummaryService(
        store=get_credential_store(),
        fetcher=get_readme_fetcher(),
        summarizer=get_readme_summarizer(),
        generator=get_key_generator(),
    )
