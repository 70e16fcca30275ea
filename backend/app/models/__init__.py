"""Database models and value types for OIDCGate."""

from app.models.auth_session import AuthSession
from app.models.identity import (
    AuthenticatedSession,
    FlowMaterial,
    FlowState,
    IdentityClaims,
    ProviderMetadata,
    TokenSet,
)
from app.models.oidc_flow import OIDCFlow

__all__ = [
    "AuthSession",
    "AuthenticatedSession",
    "FlowMaterial",
    "FlowState",
    "IdentityClaims",
    "OIDCFlow",
    "ProviderMetadata",
    "TokenSet",
]
