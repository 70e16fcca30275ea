"""Provider metadata resolver: OIDC discovery document and signing keys."""

import asyncio
import dataclasses
import ipaddress
import logging
import socket
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlparse

import httpx
from authlib.jose import JsonWebKey
from authlib.jose.errors import JoseError
from joserfc.errors import JoseError as JoserfcError

from app.models.identity import ProviderMetadata
from app.services.oidc_errors import DiscoveryError
from app.services.provider_http import is_transient, provider_client
from app.utils.log_redaction import sanitize_for_log

logger = logging.getLogger(__name__)

REQUIRED_METADATA_FIELDS = ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri")


class SSRFProtectionError(Exception):
    """SSRF protection blocked the request."""

    pass


def validate_oidc_url(url: str) -> None:
    """Validate OIDC URL against SSRF attacks (CWE-918).

    Blocks:
    - Non-HTTP(S) schemes
    - Private IP ranges (10.0.0.0/8, 172.16.0.0/12, 192.168.0.0/16)
    - Localhost (127.0.0.0/8, ::1)
    - Link-local addresses (169.254.0.0/16), including cloud metadata endpoints

    Args:
        url: URL to validate

    Raises:
        ValueError: If the URL is empty or has no hostname
        SSRFProtectionError: If URL targets private/internal resources
    """
    if not url:
        raise ValueError("URL cannot be empty")

    parsed = urlparse(url)
    hostname = parsed.hostname

    if parsed.scheme not in ("http", "https"):
        raise SSRFProtectionError(f"Unsupported scheme: {parsed.scheme}")

    if not hostname:
        raise ValueError("Invalid URL: no hostname")

    try:
        ip = ipaddress.ip_address(socket.gethostbyname(hostname))
    except (socket.gaierror, ValueError):
        # Unresolvable here - the HTTP layer will fail on its own
        return

    if str(ip) == "169.254.169.254":
        raise SSRFProtectionError("Cloud metadata endpoint blocked")

    if ip.is_private or ip.is_loopback or ip.is_link_local:
        raise SSRFProtectionError(f"Private/local IP blocked: {ip}")


class ProviderMetadataResolver:
    """Fetches and caches the provider's discovery document and JWKS.

    The cache is served until ``ttl_seconds`` old. Past that, a refresh must
    succeed: an unreachable provider raises ``DiscoveryError`` instead of
    silently serving endpoints that may have rotated.
    """

    def __init__(
        self,
        issuer_url: str,
        *,
        ttl_seconds: int = 3600,
        jwks_min_refresh_seconds: int = 60,
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_base_wait: float = 1.0,
        ssrf_protection: bool = True,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.issuer_url = issuer_url.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self.jwks_min_refresh_seconds = jwks_min_refresh_seconds
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_wait = retry_base_wait
        self.ssrf_protection = ssrf_protection
        self._http_client = http_client
        self._clock = clock

        self._metadata: ProviderMetadata | None = None
        self._loaded_at = 0.0
        self._keys_loaded_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def discovery_url(self) -> str:
        return f"{self.issuer_url}/.well-known/openid-configuration"

    def _is_fresh(self) -> bool:
        return (
            self._metadata is not None
            and self._clock() - self._loaded_at < self.ttl_seconds
        )

    async def resolve(self) -> ProviderMetadata:
        """Return provider metadata, fetching it when absent or past the TTL.

        Raises:
            DiscoveryError: If the provider is unreachable or its documents are malformed
        """
        if self._is_fresh():
            return self._metadata

        async with self._lock:
            # Another request may have refreshed while we waited
            if self._is_fresh():
                return self._metadata

            metadata = await self._fetch_metadata()
            now = self._clock()
            self._metadata = metadata
            self._loaded_at = now
            self._keys_loaded_at = now
            return metadata

    async def refresh_keys(self) -> ProviderMetadata:
        """Re-fetch the JWKS after an unknown ``kid`` (key rotation).

        Throttled to one fetch per ``jwks_min_refresh_seconds`` so forged
        tokens with random key ids cannot hammer the provider.
        """
        async with self._lock:
            if not self._is_fresh():
                metadata = await self._fetch_metadata()
                now = self._clock()
                self._metadata = metadata
                self._loaded_at = now
                self._keys_loaded_at = now
                return metadata

            if self._clock() - self._keys_loaded_at < self.jwks_min_refresh_seconds:
                logger.debug("JWKS refresh throttled")
                return self._metadata

            jwks = await self._fetch_jwks(self._metadata.jwks_uri)
            self._metadata = dataclasses.replace(
                self._metadata, jwks=jwks, keys_fetched_at=datetime.now(UTC)
            )
            self._keys_loaded_at = self._clock()
            logger.info("Refreshed provider signing keys (%d keys)", len(jwks["keys"]))
            return self._metadata

    def invalidate(self) -> None:
        """Drop the cached metadata; the next resolve() fetches it again."""
        self._metadata = None
        self._loaded_at = 0.0
        self._keys_loaded_at = 0.0

    async def _fetch_metadata(self) -> ProviderMetadata:
        document = await self._get_json(self.discovery_url, "discovery document")

        missing = [
            name
            for name in REQUIRED_METADATA_FIELDS
            if not isinstance(document.get(name), str) or not document[name].strip()
        ]
        if missing:
            raise DiscoveryError(f"Discovery document missing required fields: {', '.join(missing)}")

        issuer = document["issuer"]
        if issuer.rstrip("/") != self.issuer_url:
            raise DiscoveryError(
                f"Discovery issuer {sanitize_for_log(issuer)} does not match configured issuer"
            )

        for name in ("token_endpoint", "jwks_uri", "userinfo_endpoint"):
            if document.get(name):
                await self._check_url(document[name])

        methods = tuple(document.get("code_challenge_methods_supported") or ())
        if methods and "S256" not in methods:
            logger.warning("Provider does not advertise S256 PKCE support: %s", methods)

        jwks = await self._fetch_jwks(document["jwks_uri"])
        now = datetime.now(UTC)

        logger.info(f"Successfully fetched OIDC metadata from {self.issuer_url}")
        return ProviderMetadata(
            issuer=issuer,
            authorization_endpoint=document["authorization_endpoint"],
            token_endpoint=document["token_endpoint"],
            jwks_uri=document["jwks_uri"],
            jwks=jwks,
            fetched_at=now,
            keys_fetched_at=now,
            userinfo_endpoint=document.get("userinfo_endpoint"),
            end_session_endpoint=document.get("end_session_endpoint"),
            id_token_signing_alg_values_supported=tuple(
                document.get("id_token_signing_alg_values_supported") or ("RS256",)
            ),
            code_challenge_methods_supported=methods,
            raw=document,
        )

    async def _fetch_jwks(self, jwks_uri: str) -> dict[str, Any]:
        jwks = await self._get_json(jwks_uri, "JWKS")
        if not isinstance(jwks.get("keys"), list) or not jwks["keys"]:
            raise DiscoveryError("JWKS contains no keys")

        try:
            JsonWebKey.import_key_set(jwks)
        except (JoseError, JoserfcError, ValueError, KeyError, TypeError) as e:
            raise DiscoveryError(f"Malformed JWKS: {e}") from e

        return jwks

    async def _check_url(self, url: str) -> None:
        if not self.ssrf_protection:
            return
        try:
            await asyncio.to_thread(validate_oidc_url, url)
        except (SSRFProtectionError, ValueError) as e:
            logger.error(f"SSRF protection blocked OIDC URL: {e}")
            raise DiscoveryError(f"Blocked provider URL: {e}") from e

    async def _get_json(self, url: str, what: str) -> dict[str, Any]:
        """GET a JSON object, retrying transient failures with exponential backoff."""
        await self._check_url(url)

        attempt = 0
        while True:
            try:
                async with provider_client(self._http_client, self.timeout) as client:
                    response = await client.get(url, headers={"Accept": "application/json"})
                    response.raise_for_status()
                break
            except httpx.HTTPError as e:
                if is_transient(e) and attempt < self.max_retries:
                    wait = self.retry_base_wait * (2**attempt)
                    attempt += 1
                    logger.warning(
                        f"Fetching {what} failed ({type(e).__name__}), "
                        f"retrying in {wait}s (attempt {attempt}/{self.max_retries})"
                    )
                    await asyncio.sleep(wait)
                    continue
                logger.error(f"Cannot fetch {what} from {sanitize_for_log(url)}: {e}")
                raise DiscoveryError(f"Cannot fetch {what}: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise DiscoveryError(f"{what} is not valid JSON") from e

        if not isinstance(data, dict):
            raise DiscoveryError(f"{what} is not a JSON object")

        return data
