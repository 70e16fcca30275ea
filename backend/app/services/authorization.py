"""Authorization request builder and relying-party client configuration."""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from app.config import Settings
from app.models.identity import FlowState, ProviderMetadata
from app.services.oidc_errors import ConfigError
from app.services.pkce import compute_code_challenge

TOKEN_ENDPOINT_AUTH_METHODS = ("client_secret_post", "client_secret_basic", "none")


@dataclass(frozen=True)
class OIDCClientConfig:
    """Relying-party registration with the identity provider."""

    issuer_url: str
    client_id: str
    redirect_uri: str
    client_secret: str = ""
    scopes: str = "openid profile"
    token_endpoint_auth_method: str = "client_secret_post"
    prompt: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> OIDCClientConfig:
        return cls(
            issuer_url=settings.oidc_issuer_url.strip(),
            client_id=settings.oidc_client_id.strip(),
            redirect_uri=settings.oidc_redirect_uri.strip(),
            client_secret=settings.oidc_client_secret,
            scopes=settings.oidc_scopes,
            token_endpoint_auth_method=settings.oidc_token_endpoint_auth_method,
            prompt=settings.oidc_prompt or None,
        )

    def validate(self) -> OIDCClientConfig:
        """Check required settings.

        Raises:
            ConfigError: If issuer, client id or redirect URI is missing, or the
                client authentication method is unusable
        """
        missing = [
            name
            for name, value in (
                ("issuer URL", self.issuer_url),
                ("client ID", self.client_id),
                ("redirect URI", self.redirect_uri),
            )
            if not value
        ]
        if missing:
            raise ConfigError(f"OIDC not properly configured, missing: {', '.join(missing)}")

        if self.token_endpoint_auth_method not in TOKEN_ENDPOINT_AUTH_METHODS:
            raise ConfigError(
                f"Unsupported token endpoint auth method: {self.token_endpoint_auth_method}"
            )

        if self.token_endpoint_auth_method != "none" and not self.client_secret:
            raise ConfigError(
                f"Client secret required for {self.token_endpoint_auth_method} authentication"
            )

        return self

    @property
    def scope(self) -> str:
        """Requested scopes, always including ``openid``."""
        scopes = self.scopes.split()
        if "openid" not in scopes:
            scopes.insert(0, "openid")
        # Preserve order, drop duplicates
        return " ".join(dict.fromkeys(scopes))


def build_authorization_url(
    metadata: ProviderMetadata,
    flow: FlowState,
    client: OIDCClientConfig,
) -> str:
    """Build the provider redirect URL for an Authorization Code + PKCE request.

    Pure function: derives the S256 challenge from the flow's verifier and
    preserves any query parameters already on the authorization endpoint.

    Raises:
        ConfigError: If client id or redirect URI is missing
    """
    if not client.client_id or not client.redirect_uri or not flow.redirect_uri:
        raise ConfigError("Client ID and redirect URI are required to build an authorization URL")

    params = {
        "response_type": "code",
        "client_id": client.client_id,
        "redirect_uri": flow.redirect_uri,
        "scope": client.scope,
        "state": flow.expected_state,
        "nonce": flow.expected_nonce,
        "code_challenge": compute_code_challenge(flow.code_verifier),
        "code_challenge_method": "S256",
    }
    if client.prompt:
        params["prompt"] = client.prompt

    parts = urlsplit(metadata.authorization_endpoint)
    existing = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in params]
    query = urlencode(existing + list(params.items()))

    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))
