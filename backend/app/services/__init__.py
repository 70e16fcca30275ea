"""Service layer for OIDCGate."""

from app.services.oidc import LoginRedirect, OIDCService
from app.services.oidc_errors import OIDCError

__all__ = ["LoginRedirect", "OIDCService", "OIDCError"]
