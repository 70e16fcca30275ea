"""OIDC relying-party service: login initiation and the callback validation gate."""

import hmac
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from app.models.identity import AuthenticatedSession, IdentityClaims
from app.services import pkce
from app.services.authorization import OIDCClientConfig, build_authorization_url
from app.services.discovery import ProviderMetadataResolver
from app.services.flow_store import FlowStore
from app.services.oidc_errors import (
    ProviderError,
    StateMismatchError,
    TokenValidationError,
)
from app.services.session_manager import IdentitySessionManager
from app.services.token_client import OIDCTokenClient
from app.utils.log_redaction import sanitize_for_log

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoginRedirect:
    """Where to send the browser, and the flow id and state to bind to it."""

    url: str
    flow_id: str
    state: str


class OIDCService:
    """Runs the Authorization Code + PKCE flow end to end."""

    def __init__(
        self,
        client_config: OIDCClientConfig,
        resolver: ProviderMetadataResolver,
        flow_store: FlowStore,
        token_client: OIDCTokenClient,
        session_manager: IdentitySessionManager,
    ):
        self.client_config = client_config
        self.resolver = resolver
        self.flow_store = flow_store
        self.token_client = token_client
        self.session_manager = session_manager

    async def start_login(self) -> LoginRedirect:
        """Create a fresh flow and the provider redirect URL for it.

        Raises:
            DiscoveryError: If provider metadata cannot be resolved
            ConfigError: If client configuration is incomplete
        """
        metadata = await self.resolver.resolve()
        self.client_config.validate()

        flow = await self.flow_store.create_flow(pkce.generate(), self.client_config.redirect_uri)
        url = build_authorization_url(metadata, flow, self.client_config)

        logger.info(f"Initiating OIDC login flow (flow: {flow.flow_id[:8]}...)")
        return LoginRedirect(url=url, flow_id=flow.flow_id, state=flow.expected_state)

    async def handle_callback(
        self, query: Mapping[str, str], flow_id: str | None
    ) -> AuthenticatedSession:
        """Validate the authorization response and establish a session.

        Each step fails closed; nothing is retried. Any error means the user
        starts over with a new flow.

        Raises:
            FlowNotFoundError, FlowExpiredError, AlreadyConsumedError: Flow lookup failed
            StateMismatchError: ``state`` missing or different (possible CSRF)
            ProviderError: Provider returned an error instead of a code
            TokenExchangeError: Token endpoint rejected the code
            TokenValidationError: ID token failed verification
        """
        # 1. Single-use flow lookup
        flow = await self.flow_store.consume(flow_id)

        # 2. Anti-CSRF state check, before any network call
        received_state = query.get("state") or ""
        if not hmac.compare_digest(received_state.encode(), flow.expected_state.encode()):
            logger.warning(
                f"OIDC state mismatch for flow {flow.flow_id[:8]}... (possible CSRF), "
                f"received: {sanitize_for_log(received_state[:8])}..."
            )
            raise StateMismatchError("Callback state does not match flow")

        # 3. Provider-reported error
        if query.get("error"):
            error = ProviderError(query["error"], query.get("error_description"))
            logger.warning(
                f"OIDC provider returned error: {sanitize_for_log(error.code)} "
                f"({sanitize_for_log(error.description or '')})"
            )
            raise error

        code = query.get("code")
        if not code:
            raise ProviderError("invalid_request", "Authorization response carried no code")

        # 4. Code exchange
        metadata = await self.resolver.resolve()
        tokens = await self.token_client.exchange_code(metadata, code, flow)

        id_token = tokens.get("id_token")
        if not id_token:
            raise TokenValidationError("No ID token received from provider")

        # 5. ID token verification, bound to this flow's nonce
        verified = await self.token_client.verify_id_token(
            id_token,
            expected_nonce=flow.expected_nonce,
            access_token=tokens["access_token"],
        )

        # 6. Hand off to the session manager
        token_set = self.token_client.build_token_set(tokens)
        claims = IdentityClaims.from_claims(verified)
        session_id = await self.session_manager.create_session(token_set, claims)

        logger.info(f"OIDC login successful for subject: {sanitize_for_log(claims.subject)}")
        now = datetime.now(UTC)
        return AuthenticatedSession(
            session_id=session_id,
            token_set=token_set,
            claims=claims,
            created_at=now,
            expires_at=now + timedelta(seconds=self.session_manager.session_ttl_seconds),
        )
