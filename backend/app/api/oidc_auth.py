"""OIDC authentication endpoints: login, callback, status, profile and logout."""

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.config import settings
from app.dependencies.auth import get_current_session, get_session_id
from app.dependencies.oidc import get_oidc_service
from app.models.identity import AuthenticatedSession
from app.schemas.auth import AuthStatusResponse, ErrorResponse
from app.services.oidc import OIDCService
from app.services.oidc_errors import IdentityMismatchError, OIDCError
from app.services.session_cookie import (
    SESSION_COOKIE_NAME,
    encode_session_cookie,
    flow_cookie_name,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# Create limiter instance
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)

FLOW_COOKIE_PATH = "/api"


def _is_secure(request: Request) -> bool:
    # Check X-Forwarded-Proto header (set by reverse proxy like Traefik)
    scheme = request.headers.get("x-forwarded-proto", request.url.scheme)
    return scheme == "https"


def _clear_flow_cookie(response: Response, state: str | None) -> None:
    if state:
        response.delete_cookie(
            key=flow_cookie_name(state), path=FLOW_COOKIE_PATH, httponly=True, samesite="lax"
        )


def _clear_session_cookie(response: Response) -> None:
    response.delete_cookie(key=SESSION_COOKIE_NAME, httponly=True, samesite="lax")


@router.get(
    "/login",
    status_code=status.HTTP_302_FOUND,
    responses={503: {"model": ErrorResponse}},
)
@limiter.limit(settings.login_rate_limit)
async def login(request: Request, service: OIDCService = Depends(get_oidc_service)):
    """Start a login: bind a fresh flow to this browser and redirect to the provider."""
    redirect = await service.start_login()

    response = RedirectResponse(url=redirect.url, status_code=status.HTTP_302_FOUND)
    response.set_cookie(
        key=flow_cookie_name(redirect.state),
        value=redirect.flow_id,
        httponly=True,
        secure=_is_secure(request),
        samesite="lax",
        max_age=service.flow_store.ttl_seconds,
        path=FLOW_COOKIE_PATH,
    )
    return response


@router.get(
    "/callback",
    status_code=status.HTTP_302_FOUND,
    responses={400: {"model": ErrorResponse}},
)
@limiter.limit(settings.callback_rate_limit)
async def callback(request: Request, service: OIDCService = Depends(get_oidc_service)):
    """Validate the provider's authorization response and establish a session.

    The flow is found through the cookie named after the returned ``state``,
    and that cookie is cleared whatever the outcome; a failed callback means
    starting over at ``/login``.
    """
    state = request.query_params.get("state")
    flow_id = request.cookies.get(flow_cookie_name(state)) if state else None

    try:
        session = await service.handle_callback(dict(request.query_params), flow_id)
    except OIDCError as e:
        logger.warning(f"OIDC callback rejected ({e.kind}): {e.message}")
        response = JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=e.to_dict())
        _clear_flow_cookie(response, state)
        return response

    response = RedirectResponse(url=settings.frontend_url, status_code=status.HTTP_302_FOUND)
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=encode_session_cookie(session.session_id, service.session_manager.session_ttl_seconds),
        httponly=True,
        secure=_is_secure(request),
        samesite="lax",
        max_age=service.session_manager.session_ttl_seconds,
    )
    _clear_flow_cookie(response, state)

    logger.info("Set session cookie and redirecting to frontend")
    return response


@router.get("/auth-status", response_model=AuthStatusResponse)
async def auth_status(session: AuthenticatedSession | None = Depends(get_current_session)):
    """Report whether the caller is authenticated. Never fails."""
    if session is None:
        return AuthStatusResponse(isAuthenticated=False, user=None)
    return AuthStatusResponse(isAuthenticated=True, user=session.claims.to_dict())


@router.get(
    "/user-profile",
    responses={401: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def user_profile(
    session_id: str | None = Depends(get_session_id),
    service: OIDCService = Depends(get_oidc_service),
):
    """Fetch the caller's profile from the provider's userinfo endpoint."""
    try:
        return await service.session_manager.refresh_user_info(session_id)
    except IdentityMismatchError as e:
        # Session is already destroyed; drop the cookie too
        response = JSONResponse(status_code=e.status_code, content=e.to_dict())
        _clear_session_cookie(response)
        return response


@router.get("/logout", status_code=status.HTTP_302_FOUND)
async def logout(
    session_id: str | None = Depends(get_session_id),
    service: OIDCService = Depends(get_oidc_service),
):
    """Destroy the session, clear its cookie and return to the frontend."""
    await service.session_manager.destroy_session(session_id)

    response = RedirectResponse(url=settings.frontend_url, status_code=status.HTTP_302_FOUND)
    _clear_session_cookie(response)

    logger.info("User logged out")
    return response
