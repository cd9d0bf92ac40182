"""
HMAC signing for server-to-server requests.

Both peers hold the same connection key: the SHA-256 hex digest of the
shared secret handed out at pairing. Bodies are signed byte-for-byte, so
any change to the raw body (even whitespace) invalidates the signature.
"""

import hashlib
import hmac

SIGNATURE_HEADER = "x-sync-signature"
CONNECTION_HEADER = "x-sync-connection-id"


def hash_secret(shared_secret: str) -> str:
    """Derive the stored connection key from a raw shared secret."""
    return hashlib.sha256(shared_secret.encode("utf-8")).hexdigest()


def sign_body(key: str, raw_body: bytes) -> str:
    """Hex HMAC-SHA256 of the exact request body."""
    return hmac.new(key.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(key: str, raw_body: bytes, signature: str) -> bool:
    """
    Constant-time check of a provided signature.

    Compared as bytes: header values may carry any byte, and compare_digest
    only accepts ASCII str.
    """
    expected = sign_body(key, raw_body).encode("ascii")
    provided = signature.strip().lower().encode("utf-8", "surrogateescape")
    return hmac.compare_digest(expected, provided)
