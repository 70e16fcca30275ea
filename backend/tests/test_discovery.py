"""Tests for the provider metadata resolver and SSRF URL validation."""

from unittest.mock import patch

import httpx
import pytest
from authlib.jose import JsonWebKey

from app.services.discovery import ProviderMetadataResolver, SSRFProtectionError, validate_oidc_url
from app.services.oidc_errors import DiscoveryError

ISSUER = "https://idp.example.com"


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_resolver(provider_http, clock):
    def _make(**kwargs):
        options = {
            "ttl_seconds": 3600,
            "jwks_min_refresh_seconds": 60,
            "retry_base_wait": 0,
            "ssrf_protection": False,
            "http_client": provider_http,
            "clock": clock,
        }
        options.update(kwargs)
        return ProviderMetadataResolver(ISSUER, **options)

    return _make


class TestResolve:
    """Test discovery document fetching and caching."""

    async def test_resolves_endpoints_and_keys(self, make_resolver):
        metadata = await make_resolver().resolve()

        assert metadata.issuer == ISSUER
        assert metadata.authorization_endpoint == f"{ISSUER}/authorize"
        assert metadata.token_endpoint == f"{ISSUER}/token"
        assert metadata.userinfo_endpoint == f"{ISSUER}/userinfo"
        assert metadata.end_session_endpoint == f"{ISSUER}/logout"
        assert metadata.key_ids() == {"test-key-1"}
        assert metadata.code_challenge_methods_supported == ("S256",)

    def test_discovery_url_from_issuer(self):
        resolver = ProviderMetadataResolver(f"{ISSUER}/")
        assert resolver.discovery_url == f"{ISSUER}/.well-known/openid-configuration"

    async def test_cached_within_ttl(self, make_resolver, provider, clock):
        resolver = make_resolver()

        first = await resolver.resolve()
        clock.now += 3599
        second = await resolver.resolve()

        assert first is second
        assert provider.count("/.well-known/openid-configuration") == 1
        assert provider.count("/jwks") == 1

    async def test_refetched_after_ttl(self, make_resolver, provider, clock):
        resolver = make_resolver()

        await resolver.resolve()
        clock.now += 3600
        await resolver.resolve()

        assert provider.count("/.well-known/openid-configuration") == 2

    async def test_invalidate_forces_refetch(self, make_resolver, provider):
        resolver = make_resolver()

        await resolver.resolve()
        resolver.invalidate()
        await resolver.resolve()

        assert provider.count("/.well-known/openid-configuration") == 2

    async def test_stale_cache_not_served_when_provider_down(self, make_resolver, provider, clock):
        """Past the TTL a failed refresh is an error, not the old endpoints."""
        resolver = make_resolver(max_retries=0)
        await resolver.resolve()

        clock.now += 3600
        provider.discovery_failures = 1
        with pytest.raises(DiscoveryError):
            await resolver.resolve()

    async def test_defaults_signing_algorithm_to_rs256(self, make_resolver, provider):
        del provider.discovery["id_token_signing_alg_values_supported"]
        metadata = await make_resolver().resolve()
        assert metadata.id_token_signing_alg_values_supported == ("RS256",)


class TestMalformedDiscovery:
    """Test rejection of unusable discovery documents."""

    @pytest.mark.parametrize(
        "field", ["issuer", "authorization_endpoint", "token_endpoint", "jwks_uri"]
    )
    async def test_missing_required_field(self, make_resolver, provider, field):
        """A missing endpoint is fatal; no hard-coded fallback is substituted."""
        del provider.discovery[field]
        with pytest.raises(DiscoveryError, match=field):
            await make_resolver().resolve()

    async def test_issuer_mismatch(self, make_resolver, provider):
        provider.discovery["issuer"] = "https://evil.example.com"
        with pytest.raises(DiscoveryError, match="does not match"):
            await make_resolver().resolve()

    async def test_issuer_trailing_slash_tolerated(self, make_resolver, provider):
        provider.discovery["issuer"] = f"{ISSUER}/"
        metadata = await make_resolver().resolve()
        assert metadata.issuer == f"{ISSUER}/"

    async def test_empty_jwks(self, make_resolver, provider):
        provider.jwks = {"keys": []}
        with pytest.raises(DiscoveryError, match="no keys"):
            await make_resolver().resolve()

    async def test_non_json_document(self, clock):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>not json</html>")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            resolver = ProviderMetadataResolver(
                ISSUER, ssrf_protection=False, retry_base_wait=0, http_client=http_client, clock=clock
            )
            with pytest.raises(DiscoveryError, match="not valid JSON"):
                await resolver.resolve()


class TestRetry:
    """Test bounded retry of transient discovery failures."""

    async def test_retries_transient_errors(self, make_resolver, provider):
        provider.discovery_failures = 2

        metadata = await make_resolver(max_retries=3).resolve()

        assert metadata.issuer == ISSUER
        assert provider.count("/.well-known/openid-configuration") == 3

    async def test_gives_up_after_max_retries(self, make_resolver, provider):
        provider.discovery_failures = 10

        with pytest.raises(DiscoveryError):
            await make_resolver(max_retries=2).resolve()

        assert provider.count("/.well-known/openid-configuration") == 3

    async def test_client_errors_not_retried(self, clock):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(404)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            resolver = ProviderMetadataResolver(
                ISSUER, ssrf_protection=False, retry_base_wait=0, http_client=http_client, clock=clock
            )
            with pytest.raises(DiscoveryError):
                await resolver.resolve()

        assert len(calls) == 1

    async def test_connection_errors_retried(self, provider, clock):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return provider.handler(request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            resolver = ProviderMetadataResolver(
                ISSUER, ssrf_protection=False, retry_base_wait=0, http_client=http_client, clock=clock
            )
            metadata = await resolver.resolve()

        assert metadata.issuer == ISSUER


class TestRefreshKeys:
    """Test JWKS refresh on key rotation."""

    async def test_refresh_picks_up_rotated_key(self, make_resolver, provider, clock):
        resolver = make_resolver()
        await resolver.resolve()

        new_key = JsonWebKey.generate_key("RSA", 2048, is_private=True)
        provider.rotate_key(new_key, "test-key-2")
        clock.now += 61

        metadata = await resolver.refresh_keys()
        assert metadata.key_ids() == {"test-key-2"}
        assert provider.count("/.well-known/openid-configuration") == 1

    async def test_refresh_is_throttled(self, make_resolver, provider, clock):
        resolver = make_resolver()
        await resolver.resolve()

        clock.now += 10
        await resolver.refresh_keys()

        assert provider.count("/jwks") == 1


class TestValidateOidcUrl:
    """Test validate_oidc_url SSRF protection."""

    @patch("socket.gethostbyname", return_value="8.8.8.8")
    def test_validate_oidc_url_valid_https(self, mock_dns):
        """No exception for a public HTTPS URL."""
        validate_oidc_url("https://auth.example.com/.well-known/openid-configuration")

    def test_validate_oidc_url_empty(self):
        with pytest.raises(ValueError, match="URL cannot be empty"):
            validate_oidc_url("")

    def test_validate_oidc_url_no_hostname(self):
        with pytest.raises(ValueError, match="no hostname"):
            validate_oidc_url("https://")

    def test_validate_oidc_url_bad_scheme(self):
        with pytest.raises(SSRFProtectionError, match="Unsupported scheme"):
            validate_oidc_url("file:///etc/passwd")

    @pytest.mark.parametrize("address", ["10.0.0.5", "192.168.1.1", "127.0.0.1", "172.16.0.1"])
    def test_validate_oidc_url_private_ip(self, address):
        with patch("socket.gethostbyname", return_value=address):
            with pytest.raises(SSRFProtectionError, match="Private/local IP blocked"):
                validate_oidc_url("https://internal.corp.local/oidc")

    @patch("socket.gethostbyname", return_value="169.254.169.254")
    def test_validate_oidc_url_cloud_metadata(self, mock_dns):
        with pytest.raises(SSRFProtectionError, match="Cloud metadata"):
            validate_oidc_url("http://metadata.internal/latest")

    async def test_resolver_blocks_private_endpoints(self, make_resolver, provider):
        """With protection on, a document pointing inside the network is refused."""

        def fake_dns(hostname: str) -> str:
            return "127.0.0.1" if hostname == "internal.example" else "8.8.8.8"

        provider.discovery["token_endpoint"] = "http://internal.example/token"
        resolver = make_resolver(ssrf_protection=True)

        with patch("socket.gethostbyname", side_effect=fake_dns):
            with pytest.raises(DiscoveryError, match="Blocked provider URL"):
                await resolver.resolve()
