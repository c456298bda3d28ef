"""Service API key authentication.

Backend components calling this service present an ``X-API-Key`` header. The
configuration only holds SHA-256 hashes of the keys, mapped to a caller name.
"""

import hashlib
import hmac
from typing import Dict, Optional


class AuthenticationError(Exception):
    """Raised when API key validation fails."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


def hash_api_key(raw_key: str) -> str:
    """Return the hex SHA-256 digest of a raw API key.

    Generate config values with::

        python -c "from aether_usage.auth import hash_api_key; print(hash_api_key('key'))"
    """
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def validate_api_key(header_value: Optional[str], api_keys: Dict[str, str]) -> str:
    """Return the caller name whose key hash matches ``header_value``.

    Raises:
        AuthenticationError: If the key is missing or matches no configured hash.
    """
    if not header_value:
        raise AuthenticationError("Missing API key. Provide X-API-Key header.")

    incoming_hash = hash_api_key(header_value)
    for caller, expected_hash in api_keys.items():
        if hmac.compare_digest(incoming_hash, expected_hash):
            return caller

    raise AuthenticationError("Invalid API key.")
