"""Authentication endpoint schemas."""

from typing import Any

from pydantic import BaseModel, Field


class AuthStatusResponse(BaseModel):
    """Whether the caller holds a live session, and its verified claims."""

    isAuthenticated: bool
    user: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    """Error body returned by the authentication endpoints."""

    error: str
    message: str | None = Field(None, description="Generic, non-sensitive description")
    provider_error: str | None = None
