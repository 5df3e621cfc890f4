"""
Content fingerprinting for image bytes.

A fingerprint is the lowercase hex SHA-256 digest of the raw bytes exactly as
uploaded. No decoding or normalization happens, so re-encoding an image
produces a different fingerprint.
"""

import hashlib


def fingerprint(data: bytes) -> str:
    """Return the SHA-256 hex digest of ``data``."""
    return hashlib.sha256(data).hexdigest()
