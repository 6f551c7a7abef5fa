"""Public API key validation and README summarization routes."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from keyhub.error_handlers import error_response
from keyhub.schemas.public import (
    SummarizeRequest,
    SummarizeResponse,
    ValidateRequest,
    ValidateResponse,
)
from keyhub.services.public_api_service import (
    KeyValidationService,
    PublicAPIError,
    SummaryService,
    get_key_validation_service,
    get_summary_service,
)

router = APIRouter(tags=["public"])


def _public_error(exc: PublicAPIError) -> JSONResponse:
    """Render a public API failure; invalid keys also report `valid: false`."""
    if exc.code == "invalid_api_key":
        return error_response(exc.status_code, exc.detail, exc.code, valid=False)
    return error_response(exc.status_code, exc.detail, exc.code)


@router.post(
    "/validate",
    response_model=ValidateResponse,
    response_model_exclude_none=True,
)
async def validate_api_key(
    validation_service: Annotated[KeyValidationService, Depends(get_key_validation_service)],
    payload: ValidateRequest | None = None,
) -> ValidateResponse | JSONResponse:
    """Report whether the submitted key exists."""
    raw_key = payload.api_key if payload else None
    try:
        result = await validation_service.validate(raw_key)
    except PublicAPIError as exc:
        return _public_error(exc)
    return ValidateResponse(valid=result.valid, message=result.message, key_name=result.key_name)


@router.post("/summarize", response_model=SummarizeResponse)
async def summarize_repository(
    summary_service: Annotated[SummaryService, Depends(get_summary_service)],
    x_api_key: Annotated[str | None, Header(alias="x-api-key")] = None,
    payload: SummarizeRequest | None = None,
) -> SummarizeResponse | JSONResponse:
    """Summarize a GitHub repository README for a caller holding a valid key."""
    github_url = payload.github_url if payload else None
    try:
        result = await summary_service.summarize(raw_key=x_api_key, github_url=github_url)
    except PublicAPIError as exc:
        return _public_error(exc)
    return SummarizeResponse(summary=result.summary, timestamp=result.generated_at)
