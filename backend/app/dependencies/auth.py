"""Session dependencies for FastAPI endpoints."""

from fastapi import Depends, Request

from app.dependencies.oidc import get_oidc_service
from app.models.identity import AuthenticatedSession
from app.services.oidc import OIDCService
from app.services.session_cookie import SESSION_COOKIE_NAME, decode_session_cookie


def get_session_id(request: Request) -> str | None:
    """Session id from the signed session cookie, or None."""
    return decode_session_cookie(request.cookies.get(SESSION_COOKIE_NAME))


async def get_current_session(
    session_id: str | None = Depends(get_session_id),
    service: OIDCService = Depends(get_oidc_service),
) -> AuthenticatedSession | None:
    """
    Dependency that returns the live session without requiring one.

    Loading may refresh the session's tokens. Returns None when there is no
    cookie, the cookie is invalid, or the session has ended.
    """
    return await service.session_manager.get_session(session_id)
