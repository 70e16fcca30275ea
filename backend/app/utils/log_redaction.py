"""Utility for redacting sensitive data from logs."""

import re
from typing import Any

REDACTED = "***REDACTED***"

# Substrings of dict keys whose values never reach the logs
_SENSITIVE_KEYS = {
    "password",
    "secret",
    "token",
    "code",
    "verifier",
    "nonce",
    "authorization",
    "assertion",
}

# Keys that contain a sensitive substring but are safe to log
_SAFE_KEYS = {"token_type", "error", "error_description", "error_uri", "expires_in"}


def sanitize_for_log(value: Any, max_length: int = 200) -> str:
    """Neutralize control characters in untrusted values before logging.

    Callback parameters and provider responses are attacker-influenced;
    newlines in them would let a caller forge log lines.
    """
    text = str(value)
    text = text.replace("\r\n", " ").replace("\r", " ").replace("\n", " ").replace("\t", " ")
    text = re.sub(r"[\x00-\x1f\x7f]", "", text)
    if len(text) > max_length:
        text = text[:max_length] + "..."
    return text


def redact_dict_keys(data: dict[str, Any]) -> dict[str, Any]:
    """
    Redact token-bearing keys in a dictionary.

    Keys redacted (substring match, case-insensitive):
    - access_token, refresh_token, id_token
    - code, code_verifier, nonce
    - client_secret, password, authorization

    Args:
        data: Dictionary to redact

    Returns:
        Dictionary with sensitive values replaced with "***REDACTED***"
    """
    if not isinstance(data, dict):
        return data

    redacted = {}
    for key, value in data.items():
        key_lower = str(key).lower()

        if key_lower not in _SAFE_KEYS and any(s in key_lower for s in _SENSITIVE_KEYS):
            redacted[key] = REDACTED
        elif isinstance(value, dict):
            redacted[key] = redact_dict_keys(value)
        elif isinstance(value, list):
            redacted[key] = [redact_dict_keys(item) if isinstance(item, dict) else item for item in value]
        else:
            redacted[key] = value

    return redacted


def redact_string(text: str) -> str:
    """
    Redact patterns in strings that look like credentials.

    Patterns redacted:
    - Bearer tokens: "Bearer abc123..." -> "Bearer ***REDACTED***"
    - Basic auth: "Basic abc123..." -> "Basic ***REDACTED***"
    - Credentials in query/form strings: "code=xyz" -> "code=***REDACTED***"
    - JSON with sensitive keys: {"id_token": "..."} -> {"id_token": "***REDACTED***"}

    Args:
        text: String to redact

    Returns:
        Redacted string
    """
    text = re.sub(
        r"(Bearer\s+)[A-Za-z0-9_\-\.~+/]+=*",
        rf"\1{REDACTED}",
        text,
        flags=re.IGNORECASE,
    )

    text = re.sub(
        r"(Basic\s+)[A-Za-z0-9+/=]+",
        rf"\1{REDACTED}",
        text,
        flags=re.IGNORECASE,
    )

    text = re.sub(
        r"((?:^|[?&])(code|code_verifier|client_secret|refresh_token|access_token|id_token)=)[^&\s]+",
        rf"\1{REDACTED}",
        text,
        flags=re.IGNORECASE,
    )

    text = re.sub(
        r'("(?:access_token|refresh_token|id_token|client_secret|code_verifier|password)":\s*")[^"]*(")',
        rf"\1{REDACTED}\2",
        text,
        flags=re.IGNORECASE,
    )

    return text
