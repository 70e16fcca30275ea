"""Pydantic schemas for API requests and responses."""

from app.schemas.auth import AuthStatusResponse, ErrorResponse

__all__ = ["AuthStatusResponse", "ErrorResponse"]
