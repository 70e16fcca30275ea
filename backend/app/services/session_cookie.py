"""Signed session cookie: carries the opaque session id, never the tokens.

The cookie value is a short HS256 JWT (``sid`` + ``exp``) signed with a
server-side key, so a tampered or forged cookie is rejected before any
session lookup.
"""

import hashlib
import logging
import secrets
import time
from pathlib import Path

from authlib.jose import JsonWebToken
from authlib.jose.errors import JoseError
from joserfc.errors import JoseError as JoserfcError

from app.config import settings

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "oidcgate_session"
FLOW_COOKIE_NAME = "oidcgate_flow"
COOKIE_ALGORITHM = "HS256"

_jwt = JsonWebToken([COOKIE_ALGORITHM])
_secret_key: str | None = None


def flow_cookie_name(state: str) -> str:
    """Cookie name for one login flow, derived from its ``state``.

    Each flow gets its own cookie so concurrent logins in one browser (one per
    tab) don't overwrite each other. The callback finds its flow from the
    ``state`` the provider echoes back.
    """
    digest = hashlib.sha256(state.encode()).hexdigest()[:16]
    return f"{FLOW_COOKIE_NAME}_{digest}"


def get_or_create_secret_key(key_file: Path) -> str:
    """Get existing or create new secret key.

    If the secret key file exists, reads and returns it.
    If not, generates a new cryptographically secure key and saves it.

    Note:
        Falls back to in-memory key generation if file operations fail.
        This means the key will change on restart, logging out all users.
    """
    try:
        if key_file.exists():
            secret_key = key_file.read_text().strip()
            if secret_key:
                logger.debug("Loaded existing session secret key from %s", key_file)
                return secret_key
            logger.warning("Session secret key file at %s is empty, generating new key", key_file)

        # 32 bytes = 256 bits
        secret_key = secrets.token_urlsafe(32)

        key_file.parent.mkdir(parents=True, exist_ok=True)
        key_file.write_text(secret_key)  # noqa: S105
        key_file.chmod(0o600)

        logger.info("Generated new session secret key and saved to %s", key_file)
        return secret_key

    except OSError as e:
        logger.error("Cannot use session secret key file %s: %s", key_file, e)
        logger.warning("Using temporary in-memory secret key (will change on restart)")
        return secrets.token_urlsafe(32)


def get_secret_key() -> str:
    """Signing key from settings, else from the key file (loaded once)."""
    global _secret_key
    if _secret_key is None:
        if settings.session_secret:
            _secret_key = settings.session_secret
        else:
            _secret_key = get_or_create_secret_key(Path(settings.session_secret_file))
    return _secret_key


def encode_session_cookie(session_id: str, max_age: int) -> str:
    """Sign a session id into a cookie value valid for ``max_age`` seconds."""
    now = int(time.time())
    payload = {"sid": session_id, "iat": now, "exp": now + max_age}
    encoded = _jwt.encode({"alg": COOKIE_ALGORITHM}, payload, get_secret_key())
    return encoded.decode("utf-8") if isinstance(encoded, bytes) else encoded


def decode_session_cookie(value: str | None) -> str | None:
    """Return the session id from a cookie value, or None if invalid or expired."""
    if not value:
        return None

    try:
        claims = _jwt.decode(value, get_secret_key())
        claims.validate()
    except (JoseError, JoserfcError, ValueError) as e:
        logger.warning("Rejected session cookie: %s", type(e).__name__)
        return None

    session_id = claims.get("sid")
    if not isinstance(session_id, str) or not session_id:
        return None
    return session_id
