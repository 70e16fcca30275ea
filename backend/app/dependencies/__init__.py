"""Dependencies for FastAPI endpoints."""

from app.dependencies.auth import get_current_session, get_session_id
from app.dependencies.oidc import get_oidc_service

__all__ = ["get_current_session", "get_oidc_service", "get_session_id"]
