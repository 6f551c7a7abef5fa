"""Sign-in schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    """Magic-link request payload."""

    email: str = Field(min_length=3, max_length=320)


class MessageResponse(BaseModel):
    """Plain user-facing message."""

    message: str
