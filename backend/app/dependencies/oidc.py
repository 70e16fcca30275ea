"""Process-wide OIDC service wiring for FastAPI endpoints."""

import logging

from app.config import settings
from app.services.authorization import OIDCClientConfig
from app.services.discovery import ProviderMetadataResolver
from app.services.flow_store import DatabaseFlowStore, FlowStore, InMemoryFlowStore
from app.services.oidc import OIDCService
from app.services.oidc_errors import ConfigError
from app.services.session_manager import IdentitySessionManager
from app.services.token_client import OIDCTokenClient

logger = logging.getLogger(__name__)

# Global instance
_oidc_service: OIDCService | None = None


def build_flow_store(backend: str, ttl_seconds: int) -> FlowStore:
    """Create the configured flow store backend."""
    if backend == "memory":
        return InMemoryFlowStore(ttl_seconds)
    if backend == "database":
        return DatabaseFlowStore(ttl_seconds)
    raise ConfigError(f"Unknown flow store backend: {backend}")


def build_oidc_service() -> OIDCService:
    """Assemble the OIDC service from application settings."""
    client_config = OIDCClientConfig.from_settings(settings)
    resolver = ProviderMetadataResolver(
        client_config.issuer_url,
        ttl_seconds=settings.discovery_ttl_seconds,
        jwks_min_refresh_seconds=settings.jwks_min_refresh_seconds,
        timeout=settings.http_timeout_seconds,
        max_retries=settings.discovery_max_retries,
        retry_base_wait=settings.discovery_retry_base_wait,
        ssrf_protection=settings.ssrf_protection,
    )
    token_client = OIDCTokenClient(
        client_config,
        resolver,
        timeout=settings.http_timeout_seconds,
        clock_skew_seconds=settings.clock_skew_seconds,
        id_token_max_age_seconds=settings.id_token_max_age_seconds,
    )
    session_manager = IdentitySessionManager(
        token_client, session_ttl_seconds=settings.session_ttl_seconds
    )
    flow_store = build_flow_store(settings.flow_store_backend, settings.flow_ttl_seconds)

    logger.info(
        f"OIDC service configured (issuer: {client_config.issuer_url}, "
        f"flow store: {flow_store.backend})"
    )
    return OIDCService(client_config, resolver, flow_store, token_client, session_manager)


def get_oidc_service() -> OIDCService:
    """Get the global OIDC service instance."""
    global _oidc_service
    if _oidc_service is None:
        _oidc_service = build_oidc_service()
    return _oidc_service
