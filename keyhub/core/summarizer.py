"""README summarization pipeline: prompt template piped into a chat model."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from functools import lru_cache

import structlog
from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import PromptTemplate
from langchain_core.runnables import Runnable
from langchain_openai import ChatOpenAI
from openai import RateLimitError

from keyhub.config import LLMSettings, get_settings

logger = structlog.get_logger(__name__)

README_PROMPT = PromptTemplate.from_template(
    """You are a technical documentation expert.
Analyze this README.md content and provide a concise summary:

{readme_content}

Focus on:
1. Project's main purpose
2. Key features
3. Technologies used

Keep the summary brief and informative."""
)

RATE_LIMITED_DETAIL = "OpenAI API rate limit exceeded. Please try again later."


@dataclass(frozen=True)
class ReadmeSummary:
    """Generated summary and when it was produced."""

    summary: str
    generated_at: datetime


class SummarizationError(Exception):
    """Raised when the model call fails; `code` separates rate limiting from other failures."""

    def __init__(self, detail: str, code: str) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code


def _is_rate_limited(exc: Exception) -> bool:
    """Detect upstream rate limiting from the failure type or message."""
    if isinstance(exc, RateLimitError):
        return True
    message = str(exc).lower()
    return "429" in message or "quota" in message


def build_chat_model(settings: LLMSettings) -> ChatOpenAI:
    """Create the chat model with client-side retries disabled."""
    return ChatOpenAI(
        api_key=settings.openai_api_key.get_secret_value(),
        model=settings.model,
        temperature=settings.temperature,
        max_retries=0,
    )


class ReadmeSummarizer:
    """Run one model call per README."""

    def __init__(self, model: Runnable) -> None:
        self._chain = README_PROMPT | model | StrOutputParser()

    async def summarize(self, readme_content: str) -> ReadmeSummary:
        """Summarize README text, raising SummarizationError on any model failure."""
        try:
            summary = await self._chain.ainvoke({"readme_content": readme_content})
        except Exception as exc:
            if _is_rate_limited(exc):
                logger.warning("summary_rate_limited", error_type=type(exc).__name__)
                raise SummarizationError(RATE_LIMITED_DETAIL, "llm_rate_limited") from exc
            logger.error("summary_generation_failed", error_type=type(exc).__name__)
            raise SummarizationError("Failed to generate summary", "llm_failure") from exc
        return ReadmeSummary(summary=summary, generated_at=datetime.now(UTC))


@lru_cache
def get_readme_summarizer() -> ReadmeSummarizer:
    """Create and cache the summarizer bound to the configured model."""
    return ReadmeSummarizer(model=build_chat_model(get_settings().llm))
