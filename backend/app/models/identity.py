"""Value types for the OIDC relying-party flow."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# Claims that are lifted into typed IdentityClaims fields; everything else is profile
_REGISTERED_CLAIMS = {"sub", "iss", "aud", "exp", "iat", "nonce"}


@dataclass(frozen=True)
class ProviderMetadata:
    """Identity provider discovery document plus its signing key set."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    jwks: dict[str, Any]
    fetched_at: datetime
    keys_fetched_at: datetime
    userinfo_endpoint: str | None = None
    end_session_endpoint: str | None = None
    id_token_signing_alg_values_supported: tuple[str, ...] = ("RS256",)
    code_challenge_methods_supported: tuple[str, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def key_ids(self) -> set[str]:
        """Return the ``kid`` values present in the signing key set."""
        return {key["kid"] for key in self.jwks.get("keys", []) if key.get("kid")}


@dataclass(frozen=True)
class FlowMaterial:
    """Per-flow PKCE verifier/challenge, anti-CSRF state and anti-replay nonce."""

    verifier: str
    challenge: str
    state: str
    nonce: str


@dataclass(frozen=True)
class FlowState:
    """A pending login attempt, consumed exactly once at callback."""

    flow_id: str
    code_verifier: str
    expected_state: str
    expected_nonce: str
    redirect_uri: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if the flow has passed its TTL."""
        now = now or datetime.now(UTC)
        return now >= as_utc(self.expires_at)


@dataclass(frozen=True)
class TokenSet:
    """Tokens returned by the provider's token endpoint."""

    access_token: str
    token_type: str
    id_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        """Access token expiry; tokens without ``expires_in`` never expire on their own."""
        if self.expires_at is None:
            return False
        now = now or datetime.now(UTC)
        return now >= as_utc(self.expires_at)


@dataclass(frozen=True)
class IdentityClaims:
    """Verified ID token claims. Only constructed after signature and claim checks."""

    subject: str
    issuer: str
    audience: list[str]
    expires_at: datetime
    issued_at: datetime
    nonce: str | None = None
    profile: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> IdentityClaims:
        """Build from a verified claims mapping."""
        audience = claims["aud"]
        if isinstance(audience, str):
            audience = [audience]
        return cls(
            subject=str(claims["sub"]),
            issuer=claims["iss"],
            audience=list(audience),
            expires_at=datetime.fromtimestamp(claims["exp"], UTC),
            issued_at=datetime.fromtimestamp(claims["iat"], UTC),
            nonce=claims.get("nonce"),
            profile={k: v for k, v in claims.items() if k not in _REGISTERED_CLAIMS},
            raw=dict(claims),
        )

    def to_dict(self) -> dict[str, Any]:
        """Claims as returned to the frontend."""
        return dict(self.raw)


@dataclass
class AuthenticatedSession:
    """An established login bound to an opaque, cookie-carried session id."""

    session_id: str
    token_set: TokenSet
    claims: IdentityClaims
    created_at: datetime
    expires_at: datetime


def as_utc(value: datetime) -> datetime:
    """SQLite drops tzinfo on round-trip; treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
