"""Fetch a GitHub repository README from raw content hosting."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

import httpx
import structlog

from keyhub.config import get_settings

logger = structlog.get_logger(__name__)


class ReadmeNotFoundError(Exception):
    """Raised when no candidate branch serves a README."""


def raw_readme_url(
    github_url: str, branch: str, raw_host: str = "raw.githubusercontent.com"
) -> str:
    """Derive the raw README URL for a repository URL on a given branch.

    `https://github.com/owner/repo` becomes
    `https://raw.githubusercontent.com/owner/repo/<branch>/README.md`.
    """
    base = github_url.strip().replace("github.com", raw_host, 1).replace("/tree/", "/")
    return f"{base.rstrip('/')}/{branch}/README.md"


class ReadmeFetcher:
    """Fetch README text, trying each default-branch candidate once in order."""

    def __init__(
        self,
        branches: list[str] | None = None,
        raw_host: str = "raw.githubusercontent.com",
        timeout: httpx.Timeout | float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._branches = branches or ["main", "master"]
        self._raw_host = raw_host
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=timeout or 10.0, follow_redirects=True
        )

    async def fetch(self, github_url: str) -> str:
        """Return README text for github_url or raise ReadmeNotFoundError."""
        for branch in self._branches:
            url = raw_readme_url(github_url, branch, raw_host=self._raw_host)
            try:
                response = await self._client.get(url)
            except httpx.RequestError as exc:
                logger.warning("readme_fetch_failed", branch=branch, error=type(exc).__name__)
                continue
            if response.is_success:
                return response.text
            logger.info("readme_not_on_branch", branch=branch, status_code=response.status_code)

        branch_list = " or ".join(self._branches)
        raise ReadmeNotFoundError(f"README.md not found in {branch_list} branch")

    async def aclose(self) -> None:
        """Close underlying HTTP client if owned by this instance."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> ReadmeFetcher:
        """Enter async context manager."""
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        """Exit async context manager and close managed resources."""
        del exc_type, exc, tb
        await self.aclose()


@lru_cache
def get_readme_fetcher() -> ReadmeFetcher:
    """Create and cache README fetcher."""
    settings = get_settings()
    return ReadmeFetcher(
        branches=list(settings.github.branches),
        raw_host=settings.github.raw_host,
        timeout=settings.github.fetch_timeout_seconds,
    )
