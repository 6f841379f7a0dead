"""
Security utilities shared by the authenticators.

Security considerations:
- Random material comes from ``secrets`` only
- Stored secrets are digests, never the raw value
- Secrets are only ever looked up by digest, never compared raw
- Anything that might be logged goes through the masking helpers first
"""

import base64
import binascii
import hashlib
import json
import logging
import re
import secrets
from typing import Any

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "xapi-"
API_KEY_PATTERN = re.compile(r"^xapi-[a-f0-9]{32}$")


def generate_token(nbytes: int = 48) -> str:
    """Generate a URL-safe, high-entropy opaque token."""
    return secrets.token_urlsafe(nbytes)


def generate_api_key() -> str:
    """Generate a new API key: ``xapi-`` followed by 32 lowercase hex characters."""
    return f"{API_KEY_PREFIX}{secrets.token_hex(16)}"


def is_valid_api_key_format(candidate: Any) -> bool:
    """Cheap syntactic check run before any store lookup."""
    return isinstance(candidate, str) and API_KEY_PATTERN.fullmatch(candidate) is not None


def hash_token(value: str) -> str:
    """Content-address a secret so the store never holds the raw value."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def mask_key(value: str | None, visible: int = 10) -> str:
    """Show only the leading characters of a key or token."""
    if not value:
        return "***"
    if len(value) <= visible:
        return "***"
    return f"{value[:visible]}..."


def mask_sensitive_data(data: dict[str, Any]) -> dict[str, Any]:
    """
    Mask sensitive data in dictionaries for logging.

    Args:
        data: Dictionary potentially containing sensitive data

    Returns:
        Dictionary with sensitive values masked
    """
    sensitive_keys = {
        "password",
        "token",
        "secret",
        "key",
        "credential",
        "authorization",
        "code",
    }

    masked = {}
    for key, value in data.items():
        key_lower = key.lower()
        is_sensitive = any(sensitive in key_lower for sensitive in sensitive_keys)

        if is_sensitive:
            if isinstance(value, dict):
                masked[key] = mask_sensitive_data(value)
            elif isinstance(value, str) and len(value) > 4:
                masked[key] = f"{value[:2]}***{value[-2:]}"
            else:
                masked[key] = "***"
        elif isinstance(value, dict):
            masked[key] = mask_sensitive_data(value)
        else:
            masked[key] = value

    return masked


def encode_state(data: dict[str, Any]) -> str:
    """Encode an OAuth ``state`` payload as base64 JSON."""
    return base64.urlsafe_b64encode(json.dumps(data).encode("utf-8")).decode("ascii")


def decode_state(state: str | None) -> dict[str, Any]:
    """Decode a base64 JSON OAuth ``state`` value.

    Undecodable state is not an error: the caller's state is opaque to us and
    only used to enrich claims when it happens to be structured.
    """
    if not state:
        return {}

    padded = state + "=" * (-len(state) % 4)
    for decoder in (base64.urlsafe_b64decode, base64.b64decode):
        try:
            raw = decoder(padded.encode("ascii"))
            decoded = json.loads(raw.decode("utf-8"))
        except (binascii.Error, UnicodeError, ValueError):
            continue
        if isinstance(decoded, dict):
            return decoded
        break

    logger.warning("Ignoring undecodable OAuth state parameter")
    return {}
