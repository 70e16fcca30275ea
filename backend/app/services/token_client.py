"""Token endpoint, ID token verification and userinfo calls to the provider."""

import hmac
import logging
import time
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx
from authlib.common.encoding import json_loads, to_bytes, urlsafe_b64decode
from authlib.jose import JsonWebKey, JsonWebToken
from authlib.jose.errors import JoseError
from joserfc.errors import JoseError as JoserfcError
from authlib.oidc.core import CodeIDToken

from app.models.identity import FlowState, ProviderMetadata, TokenSet
from app.services.authorization import OIDCClientConfig
from app.services.discovery import ProviderMetadataResolver
from app.services.oidc_errors import TokenExchangeError, TokenValidationError, UserInfoError
from app.services.provider_http import provider_client
from app.utils.log_redaction import redact_dict_keys, redact_string, sanitize_for_log

logger = logging.getLogger(__name__)

# Only asymmetric signatures: HS* would verify with the client secret, "none" with nothing
ASYMMETRIC_ALGORITHMS = {
    "RS256", "RS384", "RS512",
    "PS256", "PS384", "PS512",
    "ES256", "ES384", "ES512",
    "EdDSA",
}


def decode_jwt_header(token: str) -> dict[str, Any]:
    """Read the unverified JOSE header of a compact JWS."""
    if not isinstance(token, str) or token.count(".") != 2:
        raise TokenValidationError("ID token is not a compact JWS")

    try:
        header = json_loads(urlsafe_b64decode(to_bytes(token.split(".")[0])))
    except (ValueError, TypeError) as e:
        raise TokenValidationError(f"Malformed ID token header: {e}") from e

    if not isinstance(header, dict):
        raise TokenValidationError("Malformed ID token header")
    return header


class OIDCTokenClient:
    """Talks to the provider's token and userinfo endpoints and verifies ID tokens."""

    def __init__(
        self,
        client_config: OIDCClientConfig,
        resolver: ProviderMetadataResolver,
        *,
        timeout: float = 10.0,
        clock_skew_seconds: int = 60,
        id_token_max_age_seconds: int = 3600,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.client_config = client_config
        self.resolver = resolver
        self.timeout = timeout
        self.clock_skew_seconds = clock_skew_seconds
        self.id_token_max_age_seconds = id_token_max_age_seconds
        self._http_client = http_client

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    async def exchange_code(
        self, metadata: ProviderMetadata, code: str, flow: FlowState
    ) -> dict[str, Any]:
        """Exchange an authorization code for tokens (never retried; codes are single use).

        Raises:
            TokenExchangeError: On transport failure or a non-2xx response
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": flow.redirect_uri,
            "code_verifier": flow.code_verifier,
        }
        tokens = await self._token_request(metadata, data)
        logger.info("Successfully exchanged code for tokens")
        return tokens

    async def refresh(self, metadata: ProviderMetadata, refresh_token: str) -> dict[str, Any]:
        """Redeem a refresh token for a new token set."""
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        tokens = await self._token_request(metadata, data)
        logger.info("Successfully refreshed tokens")
        return tokens

    async def _token_request(self, metadata: ProviderMetadata, data: dict[str, str]) -> dict[str, Any]:
        config = self.client_config
        auth = None

        if config.token_endpoint_auth_method == "client_secret_basic":
            # RFC 6749 2.3.1: credentials are form-encoded before base64
            auth = httpx.BasicAuth(quote(config.client_id, safe=""), quote(config.client_secret, safe=""))
        elif config.token_endpoint_auth_method == "client_secret_post":
            data = {**data, "client_id": config.client_id, "client_secret": config.client_secret}
        else:
            data = {**data, "client_id": config.client_id}

        try:
            async with provider_client(self._http_client, self.timeout) as client:
                response = await client.post(
                    metadata.token_endpoint,
                    data=data,
                    auth=auth,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.error(f"Token endpoint unreachable: {type(e).__name__}")
            raise TokenExchangeError(f"Token endpoint unreachable: {e}") from e

        if not response.is_success:
            error_body = self._error_body(response)
            logger.error(f"HTTP error during token request: {response.status_code} {error_body}")
            raise TokenExchangeError(
                f"Token endpoint returned {response.status_code}",
                status=response.status_code,
                error=error_body.get("error"),
                description=error_body.get("error_description"),
            )

        try:
            tokens = response.json()
        except ValueError as e:
            raise TokenExchangeError("Token response is not valid JSON") from e

        if not isinstance(tokens, dict) or not tokens.get("access_token"):
            raise TokenExchangeError("Token response has no access_token")

        token_type = str(tokens.get("token_type", ""))
        if token_type.lower() != "bearer":
            raise TokenExchangeError(f"Unsupported token type: {sanitize_for_log(token_type)}")

        return tokens

    @staticmethod
    def _error_body(response: httpx.Response) -> dict[str, Any]:
        """Provider error body, redacted for logging and error propagation."""
        try:
            body = response.json()
        except ValueError:
            return {"error": None, "body": sanitize_for_log(redact_string(response.text))}
        if not isinstance(body, dict):
            return {"error": None, "body": sanitize_for_log(body)}
        return redact_dict_keys(body)

    @staticmethod
    def build_token_set(tokens: dict[str, Any], previous: TokenSet | None = None) -> TokenSet:
        """Turn a token response into a TokenSet.

        On refresh the provider may omit ``refresh_token`` and ``id_token``;
        the previous values are carried over.
        """
        expires_at = None
        expires_in = tokens.get("expires_in")
        if expires_in is not None:
            try:
                expires_at = datetime.now(UTC) + timedelta(seconds=int(expires_in))
            except (TypeError, ValueError):
                logger.warning("Ignoring non-numeric expires_in: %s", sanitize_for_log(expires_in))

        return TokenSet(
            access_token=tokens["access_token"],
            token_type=tokens.get("token_type", "Bearer"),
            id_token=tokens.get("id_token") or (previous.id_token if previous else ""),
            refresh_token=tokens.get("refresh_token") or (previous.refresh_token if previous else None),
            expires_at=expires_at,
            scope=tokens.get("scope") or (previous.scope if previous else None),
        )

    # ------------------------------------------------------------------
    # ID token
    # ------------------------------------------------------------------

    async def verify_id_token(
        self,
        id_token: str,
        *,
        expected_nonce: str | None,
        access_token: str | None = None,
    ) -> dict[str, Any]:
        """Verify the ID token signature and claims.

        Checks the signature against the provider's current JWKS (refreshing
        once for an unknown ``kid``), then ``iss``, ``aud``/``azp``, ``exp``,
        ``iat``, ``nonce`` and ``at_hash``. ``expected_nonce`` is None only for
        tokens returned by a refresh grant.

        Returns:
            Verified claims dict

        Raises:
            TokenValidationError: On any signature or claim failure
            DiscoveryError: If the key set cannot be loaded
        """
        metadata = await self.resolver.resolve()
        header = decode_jwt_header(id_token)

        algorithms = [
            alg for alg in metadata.id_token_signing_alg_values_supported if alg in ASYMMETRIC_ALGORITHMS
        ]
        alg = header.get("alg")
        if alg not in algorithms:
            raise TokenValidationError(f"ID token algorithm not allowed: {sanitize_for_log(alg)}")

        kid = header.get("kid")
        if kid and kid not in metadata.key_ids():
            logger.info("ID token signed with unknown key %s, refreshing JWKS", sanitize_for_log(kid))
            metadata = await self.resolver.refresh_keys()
            if kid not in metadata.key_ids():
                raise TokenValidationError("ID token signed with an unknown key")

        claims_params = {"client_id": self.client_config.client_id}
        if expected_nonce is not None:
            claims_params["nonce"] = expected_nonce
        if access_token:
            claims_params["access_token"] = access_token

        # Newer authlib releases raise joserfc errors from the OIDC claim checks
        try:
            key = self._select_key(metadata, kid)
            claims = JsonWebToken(algorithms).decode(
                id_token,
                key,
                claims_cls=CodeIDToken,
                claims_options={
                    "iss": {"essential": True, "value": metadata.issuer},
                    "aud": {"essential": True, "value": self.client_config.client_id},
                },
                claims_params=claims_params,
            )
            claims.validate(leeway=self.clock_skew_seconds)
        except (JoseError, JoserfcError, ValueError, KeyError, TypeError) as e:
            raise TokenValidationError(f"ID token verification failed: {e}") from e

        # Constant-time nonce comparison
        if expected_nonce is not None and not hmac.compare_digest(
            str(claims.get("nonce", "")), expected_nonce
        ):
            raise TokenValidationError("ID token nonce mismatch")

        self._check_issued_at(claims)

        logger.info(f"Successfully verified ID token for subject: {sanitize_for_log(claims.get('sub'))}")
        return dict(claims)

    @staticmethod
    def _select_key(metadata: ProviderMetadata, kid: str | None):
        if kid:
            return JsonWebKey.import_key_set(metadata.jwks)

        keys = metadata.jwks.get("keys", [])
        if len(keys) != 1:
            raise TokenValidationError("ID token has no kid and the provider publishes several keys")
        return JsonWebKey.import_key(keys[0])

    def _check_issued_at(self, claims: dict[str, Any]) -> None:
        iat = claims.get("iat")
        if not isinstance(iat, (int, float)) or isinstance(iat, bool):
            raise TokenValidationError("ID token iat is not numeric")

        now = time.time()
        if iat > now + self.clock_skew_seconds:
            raise TokenValidationError("ID token issued in the future")
        if now - iat > self.id_token_max_age_seconds:
            raise TokenValidationError("ID token is too old")

    # ------------------------------------------------------------------
    # Userinfo
    # ------------------------------------------------------------------

    async def fetch_userinfo(self, metadata: ProviderMetadata, access_token: str) -> dict[str, Any]:
        """Fetch user info from the provider's userinfo endpoint.

        Raises:
            UserInfoError: If the endpoint is missing, unreachable, or returns
                something other than a JSON object
        """
        if not metadata.userinfo_endpoint:
            raise UserInfoError("Userinfo endpoint not found in provider metadata")

        try:
            async with provider_client(self._http_client, self.timeout) as client:
                response = await client.get(
                    metadata.userinfo_endpoint,
                    headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise UserInfoError(f"Userinfo endpoint unreachable: {e}") from e

        if not response.is_success:
            logger.error(f"HTTP error fetching userinfo: {response.status_code}")
            raise UserInfoError(f"Userinfo endpoint returned {response.status_code}")

        try:
            userinfo = response.json()
        except ValueError as e:
            raise UserInfoError("Userinfo response is not JSON") from e

        if not isinstance(userinfo, dict):
            raise UserInfoError("Userinfo response is not a JSON object")

        logger.info("Successfully fetched userinfo")
        return userinfo
