"""Content fingerprints used for change detection and deduplication."""

import hashlib


def sha256_bytes(content: bytes) -> str:
    """Hex SHA-256 of raw bytes (uploaded file fingerprint)."""
    return hashlib.sha256(content).hexdigest()


def sha256_text(text: str) -> str:
    """Hex SHA-256 of UTF-8 encoded text.

    Callers normalize whitespace first so formatting noise does not change
    the fingerprint.
    """
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
