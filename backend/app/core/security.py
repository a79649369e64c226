"""Security utilities for the arbitration key used to resolve trade disputes."""

import hashlib
import hmac


def hash_api_key(api_key: str) -> str:
    """
    Hash an API key using SHA-256.

    Args:
        api_key: The plaintext API key

    Returns:
        str: SHA-256 hash of the API key as hex string
    """
    return hashlib.sha256(api_key.encode()).hexdigest()


def verify_api_key(provided_key: str, stored_hash: str) -> bool:
    """
    Verify that a provided API key matches the stored hash.

    An empty stored hash never matches, so arbitration stays closed until a
    key is configured.
    """
    if not stored_hash:
        return False
    return hmac.compare_digest(hash_api_key(provided_key), stored_hash)
