"""PKCE verifier/challenge, state and nonce generation."""

import base64
import hashlib
import secrets
from collections.abc import Callable

from app.models.identity import FlowMaterial

# 32 bytes = 256 bits of entropy; base64url-encodes to 43 chars (RFC 7636 minimum)
TOKEN_BYTES = 32


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def compute_code_challenge(verifier: str) -> str:
    """S256 transform: BASE64URL(SHA256(ASCII(verifier))), no padding."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate(token_bytes: Callable[[int], bytes] = secrets.token_bytes) -> FlowMaterial:
    """Generate fresh per-flow material.

    Args:
        token_bytes: Randomness source. Always ``secrets.token_bytes`` in the
            application; tests may pass a seeded generator.

    Returns:
        FlowMaterial with verifier, its S256 challenge, state and nonce
    """
    verifier = _b64url(token_bytes(TOKEN_BYTES))
    return FlowMaterial(
        verifier=verifier,
        challenge=compute_code_challenge(verifier),
        state=_b64url(token_bytes(TOKEN_BYTES)),
        nonce=_b64url(token_bytes(TOKEN_BYTES)),
    )
