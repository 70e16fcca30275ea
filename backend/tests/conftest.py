"""Pytest configuration and shared fixtures."""

import os
import secrets
import sys
import time
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, parse_qsl, urlsplit

import httpx
import pytest
from authlib.common.encoding import json_dumps, to_bytes, to_unicode, urlsafe_b64encode
from authlib.jose import JsonWebKey, jwt
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
project_root_str = str(PROJECT_ROOT)
if project_root_str in sys.path:
    sys.path.remove(project_root_str)
sys.path.insert(0, project_root_str)

ISSUER = "https://idp.example.com"
CLIENT_ID = "oidcgate-test"
CLIENT_SECRET = "test-client-secret"
REDIRECT_URI = "http://test/api/callback"
FRONTEND_URL = "http://frontend.test/"
SUBJECT = "user-123"
KEY_ID = "test-key-1"
HS256_SECRET = "shared-secret-an-attacker-might-guess-0123"

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-0123456789abcdef")
os.environ.setdefault("SSRF_PROTECTION", "false")
os.environ.setdefault("FRONTEND_URL", FRONTEND_URL)
os.environ.setdefault("OIDC_ISSUER_URL", ISSUER)
os.environ.setdefault("OIDC_CLIENT_ID", CLIENT_ID)
os.environ.setdefault("OIDC_CLIENT_SECRET", CLIENT_SECRET)
os.environ.setdefault("OIDC_REDIRECT_URI", REDIRECT_URI)

# ruff: noqa: E402 - Imports must come after environment variable setup
import app.models  # noqa: F401
from app.db import Base
from app.dependencies.oidc import get_oidc_service
from app.main import app
from app.services.authorization import OIDCClientConfig
from app.services.discovery import ProviderMetadataResolver
from app.services.flow_store import DatabaseFlowStore, InMemoryFlowStore
from app.services.oidc import OIDCService
from app.services.pkce import compute_code_challenge
from app.services.session_manager import IdentitySessionManager
from app.services.token_client import OIDCTokenClient

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# ============================================
# Fake identity provider
# ============================================


def _b64_json(data: dict[str, Any]) -> str:
    return to_unicode(urlsafe_b64encode(to_bytes(json_dumps(data))))


class FakeProvider:
    """In-process OpenID provider served through httpx.MockTransport.

    Issues authorization codes bound to the nonce and PKCE challenge of the
    authorization URL it is handed, and enforces the PKCE check at its token
    endpoint like a real provider.
    """

    def __init__(self, key):
        self.key = key
        self.kid = KEY_ID
        self.discovery: dict[str, Any] = {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/authorize",
            "token_endpoint": f"{ISSUER}/token",
            "jwks_uri": f"{ISSUER}/jwks",
            "userinfo_endpoint": f"{ISSUER}/userinfo",
            "end_session_endpoint": f"{ISSUER}/logout",
            "response_types_supported": ["code"],
            "id_token_signing_alg_values_supported": ["RS256"],
            "code_challenge_methods_supported": ["S256"],
        }
        self.jwks: dict[str, Any] = {"keys": [key.as_dict(is_private=False, kid=KEY_ID)]}
        self.userinfo: dict[str, Any] = {
            "sub": SUBJECT,
            "name": "Test User",
            "email": "test.user@example.com",
        }
        self.expires_in: int | None = 3600
        self.discovery_failures = 0
        self.token_error: str | None = None
        self.userinfo_status = 200
        self.refresh_response: dict[str, Any] | None = None

        self.codes: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.token_requests: list[dict[str, str]] = []

    # -- token minting ---------------------------------------------------

    def claims(self, **overrides) -> dict[str, Any]:
        """Default ID token claims; an override of None drops the claim."""
        now = int(time.time())
        claims = {
            "iss": ISSUER,
            "sub": SUBJECT,
            "aud": CLIENT_ID,
            "exp": now + 300,
            "iat": now,
            "name": "Test User",
            "email": "test.user@example.com",
        }
        claims.update(overrides)
        return {k: v for k, v in claims.items() if v is not None}

    def sign(self, claims: dict[str, Any], alg: str = "RS256", kid: str | None = None, key=None) -> str:
        if alg == "none":
            return f"{_b64_json({'alg': 'none'})}.{_b64_json(claims)}."
        if alg == "HS256":
            return to_unicode(jwt.encode({"alg": "HS256"}, claims, HS256_SECRET))
        header = {"alg": alg, "kid": kid or self.kid}
        return to_unicode(jwt.encode(header, claims, key or self.key))

    def rotate_key(self, key, kid: str) -> None:
        """Publish a new signing key and sign with it from now on."""
        self.key = key
        self.kid = kid
        self.jwks = {"keys": [key.as_dict(is_private=False, kid=kid)]}

    def authorize(self, authorization_url: str, *, alg: str = "RS256", **claims) -> tuple[str, str]:
        """Approve an authorization request. Returns (code, state)."""
        params = {k: v[0] for k, v in parse_qs(urlsplit(authorization_url).query).items()}
        code = secrets.token_urlsafe(16)
        self.codes[code] = {
            "code_challenge": params["code_challenge"],
            "redirect_uri": params["redirect_uri"],
            "alg": alg,
            "claims": {"nonce": params["nonce"], **claims},
        }
        return code, params["state"]

    # -- transport -------------------------------------------------------

    def count(self, path: str) -> int:
        return sum(1 for request in self.requests if request.url.path == path)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/.well-known/openid-configuration":
            if self.discovery_failures > 0:
                self.discovery_failures -= 1
                return httpx.Response(503, text="Service Unavailable")
            return httpx.Response(200, json=self.discovery)
        if path == "/jwks":
            return httpx.Response(200, json=self.jwks)
        if path == "/token":
            return self._token(request)
        if path == "/userinfo":
            if not request.headers.get("Authorization", "").startswith("Bearer "):
                return httpx.Response(401, json={"error": "invalid_token"})
            if self.userinfo_status != 200:
                return httpx.Response(self.userinfo_status, text="upstream failure")
            return httpx.Response(200, json=self.userinfo)
        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode()))
        self.token_requests.append(form)

        if self.token_error:
            return httpx.Response(
                400, json={"error": self.token_error, "error_description": "Rejected by test"}
            )

        if form.get("grant_type") == "refresh_token":
            if self.refresh_response is not None:
                return httpx.Response(200, json=self.refresh_response)
            return httpx.Response(
                200,
                json={"access_token": "access-refreshed", "token_type": "Bearer", "expires_in": 3600},
            )

        pending = self.codes.pop(form.get("code", ""), None)
        if pending is None:
            return httpx.Response(400, json={"error": "invalid_grant"})
        if compute_code_challenge(form.get("code_verifier", "")) != pending["code_challenge"]:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "PKCE"})
        if form.get("redirect_uri") != pending["redirect_uri"]:
            return httpx.Response(400, json={"error": "invalid_grant"})

        body = {
            "access_token": f"access-{secrets.token_hex(8)}",
            "token_type": "Bearer",
            "id_token": self.sign(self.claims(**pending["claims"]), alg=pending["alg"]),
            "refresh_token": "refresh-1",
            "scope": "openid profile",
        }
        if self.expires_in is not None:
            body["expires_in"] = self.expires_in
        return httpx.Response(200, json=body)


@pytest.fixture(scope="session")
def rsa_key():
    """RSA signing key for the fake provider (generated once per run)."""
    return JsonWebKey.generate_key("RSA", 2048, is_private=True, options={"kid": KEY_ID})


@pytest.fixture
def provider(rsa_key) -> FakeProvider:
    return FakeProvider(rsa_key)


@pytest.fixture
async def provider_http(provider: FakeProvider) -> AsyncGenerator[httpx.AsyncClient]:
    """HTTP client whose every request is answered by the fake provider."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(provider.handler))
    try:
        yield http_client
    finally:
        await http_client.aclose()


# ============================================
# OIDC service fixtures
# ============================================


@pytest.fixture
def client_config() -> OIDCClientConfig:
    return OIDCClientConfig(
        issuer_url=ISSUER,
        client_id=CLIENT_ID,
        redirect_uri=REDIRECT_URI,
        client_secret=CLIENT_SECRET,
    )


@pytest.fixture
def resolver(provider_http: httpx.AsyncClient) -> ProviderMetadataResolver:
    return ProviderMetadataResolver(
        ISSUER,
        jwks_min_refresh_seconds=0,
        retry_base_wait=0,
        ssrf_protection=False,
        http_client=provider_http,
    )


@pytest.fixture
def token_client(client_config, resolver, provider_http) -> OIDCTokenClient:
    return OIDCTokenClient(client_config, resolver, http_client=provider_http)


@pytest.fixture
def session_manager(token_client, db_engine) -> IdentitySessionManager:
    return IdentitySessionManager(token_client, session_ttl_seconds=3600)


@pytest.fixture
def oidc_service(client_config, resolver, token_client, session_manager) -> OIDCService:
    """OIDC service with an in-memory flow store."""
    return OIDCService(
        client_config, resolver, InMemoryFlowStore(ttl_seconds=600), token_client, session_manager
    )


# ============================================
# Database fixtures
# ============================================


@pytest.fixture
async def db_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Override the global async_session_maker so services use the test database
    from app import db

    original_maker = db.async_session_maker
    db.async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    try:
        yield engine
    finally:
        # Restore original session maker
        db.async_session_maker = original_maker

        # Drop all tables
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

        # Explicitly close and dispose engine
        await engine.dispose(close=True)


@pytest.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession]:
    """Create test database session."""
    async_session = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    session = async_session()
    try:
        yield session
    finally:
        await session.close()


# ============================================
# API client
# ============================================


@pytest.fixture
def api_service(client_config, resolver, token_client, session_manager) -> OIDCService:
    """OIDC service as the API uses it, with the database flow store."""
    return OIDCService(
        client_config, resolver, DatabaseFlowStore(ttl_seconds=600), token_client, session_manager
    )


@pytest.fixture
async def client(api_service: OIDCService):
    """Create test client wired to the fake provider.

    Redirects are not followed so tests can inspect Location headers and cookies.
    """
    app.dependency_overrides[get_oidc_service] = lambda: api_service

    test_client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")

    try:
        yield test_client
    finally:
        await test_client.aclose()
        app.dependency_overrides.clear()
