"""OIDC relying-party error taxonomy.

Every failure in the login flow maps to one of these classes. Each carries a
stable ``kind`` (returned to the client) and an HTTP status code; the detail
message is for logs only and never leaves the server.
"""


class OIDCError(Exception):
    """Base class for relying-party failures."""

    kind = "oidc_error"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        """Client-facing body: kind plus a generic message."""
        return {"error": self.kind, "message": "Authentication failed."}


class ConfigError(OIDCError):
    """Required client configuration is missing or invalid."""

    kind = "config_error"
    status_code = 500


class DiscoveryError(OIDCError):
    """Provider discovery document or key set is unreachable or malformed."""

    kind = "discovery_error"
    status_code = 503


class FlowNotFoundError(OIDCError):
    """No pending flow exists for the presented flow id."""

    kind = "flow_not_found"


class FlowExpiredError(OIDCError):
    """The pending flow outlived its TTL."""

    kind = "flow_expired"


class AlreadyConsumedError(OIDCError):
    """The pending flow was already used by an earlier callback."""

    kind = "flow_already_consumed"


class StateMismatchError(OIDCError):
    """Callback ``state`` does not match the flow (possible CSRF)."""

    kind = "state_mismatch"


class ProviderError(OIDCError):
    """The provider reported an error on the authorization response."""

    kind = "provider_error"

    def __init__(self, code: str, description: str | None = None):
        super().__init__(f"{code}: {description}" if description else code)
        self.code = code
        self.description = description

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["provider_error"] = self.code
        return body


class TokenExchangeError(OIDCError):
    """The token endpoint rejected the grant or could not be reached."""

    kind = "token_exchange_error"

    def __init__(
        self,
        message: str,
        status: int | None = None,
        error: str | None = None,
        description: str | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.error = error
        self.description = description


class TokenValidationError(OIDCError):
    """The ID token failed signature or claim validation."""

    kind = "token_validation_error"


class IdentityMismatchError(OIDCError):
    """Userinfo subject disagrees with the ID token subject."""

    kind = "identity_mismatch"
    status_code = 401


class UserInfoError(OIDCError):
    """The userinfo endpoint failed or returned garbage."""

    kind = "userinfo_error"
    status_code = 502


class SessionNotFoundError(OIDCError):
    """No live session for the presented session id."""

    kind = "Unauthorized"
    status_code = 401

    def to_dict(self) -> dict:
        return {"error": "Unauthorized"}
