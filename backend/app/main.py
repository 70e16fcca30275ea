"""OIDCGate FastAPI application."""

import json
import logging
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as pkg_version

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api import oidc_auth
from app.config import settings as app_settings
from app.db import init_db
from app.dependencies.oidc import get_oidc_service
from app.services.oidc_errors import OIDCError

# Configure logging
logging.basicConfig(
    level=getattr(logging, app_settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


# Filter to exclude health check endpoints from access logs
class EndpointFilter(logging.Filter):
    """Filter to exclude specific endpoints from Granian access logs."""

    def __init__(self, excluded_paths: list[str]) -> None:
        super().__init__()
        self.excluded_paths = excluded_paths

    def filter(self, record: logging.LogRecord) -> bool:
        """Return False if the log record is for an excluded endpoint."""
        message = record.getMessage()
        return not any(path in message for path in self.excluded_paths)


logging.getLogger("granian.access").addFilter(EndpointFilter(["/health"]))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting OIDCGate...")
    await init_db()
    logger.info("Database initialized")

    # Misconfiguration and an unreachable provider are both fatal at startup
    service = get_oidc_service()
    service.client_config.validate()
    metadata = await service.resolver.resolve()
    logger.info(f"OIDC provider ready: {metadata.issuer}")

    purged = await service.flow_store.purge_expired()
    if purged:
        logger.info(f"Purged {purged} stale OIDC flows on startup")
    purged = await service.session_manager.purge_expired()
    if purged:
        logger.info(f"Purged {purged} expired sessions on startup")

    yield

    # Shutdown
    logger.info("Shutting down OIDCGate...")


try:
    _APP_VERSION = pkg_version("oidcgate")
except PackageNotFoundError:
    _APP_VERSION = "0.0.0"

# Create FastAPI app
app = FastAPI(
    title="OIDCGate",
    description="OpenID Connect relying party: Authorization Code + PKCE login for a web frontend",
    version=_APP_VERSION,
    lifespan=lifespan,
)

# Rate limiter setup
app.state.limiter = oidc_auth.limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore[arg-type]


@app.exception_handler(OIDCError)
async def oidc_error_handler(request: Request, exc: OIDCError) -> JSONResponse:
    """Render relying-party errors as their kind plus a generic message."""
    logger.warning(f"{request.url.path} failed ({exc.kind}): {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# CORS middleware - the frontend calls the API with credentials (cookies)
cors_origins_default = [app_settings.frontend_url]
try:
    cors_origins = json.loads(app_settings.cors_origins)
except json.JSONDecodeError:
    cors_origins = cors_origins_default

logger.info(f"CORS allowed origins: {cors_origins}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
    max_age=600,  # Cache preflight requests for 10 minutes
)


# Health endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": app_settings.app_name}


# Include routers
app.include_router(oidc_auth.router, prefix="/api", tags=["Authentication"])
