"""Hashing utilities for log-safe identifiers.

Chat addresses and pseudo identities are PII. Logs carry a short,
non-reversible sha256 prefix instead so one conversation can still be followed
across log lines.
"""

import hashlib


def hash_identifier(value: str) -> str:
    """Create non-reversible hash for logging. Returns first 12 chars of sha256."""
    return hashlib.sha256(value.encode()).hexdigest()[:12]
