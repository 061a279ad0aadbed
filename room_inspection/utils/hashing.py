"""Hashing utilities for stored inspection photos."""
import hashlib


def compute_sha256(data: bytes) -> str:
    """Compute the SHA256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def short_digest(data: bytes, length: int = 16) -> str:
    """Shortened digest used in blob file names."""
    return compute_sha256(data)[:length]
