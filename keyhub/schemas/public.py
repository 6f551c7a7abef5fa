"""Public key validation and summarization schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ValidateRequest(BaseModel):
    """Key validation request payload."""

    model_config = ConfigDict(populate_by_name=True)

    api_key: str | None = Field(default=None, alias="apiKey")


class ValidateResponse(BaseModel):
    """Key validation result; `keyName` is present only for valid keys."""

    model_config = ConfigDict(populate_by_name=True)

    valid: bool
    message: str
    key_name: str | None = Field(default=None, alias="keyName")


class SummarizeRequest(BaseModel):
    """README summarization request payload."""

    model_config = ConfigDict(populate_by_name=True)

    github_url: str | None = Field(default=None, alias="githubUrl")


class SummarizeResponse(BaseModel):
    """README summarization success payload."""

    success: bool = True
    summary: str
    timestamp: datetime
