"""Cache key derivation."""

from __future__ import annotations

import hashlib
import re

KEY_LENGTH = 64

_KEY_PATTERN = re.compile(r"[0-9a-f]{64}")


def derive_key(source_url: str) -> str:
    """Map a source URL to its cache key.

    The key is the SHA-256 hex digest of the UTF-8 encoded URL, so it is
    deterministic and only ever contains [0-9a-f].

    Args:
        source_url: The URL as received from the client.

    Returns:
        64 character lowercase hex digest.
    """
    return hashlib.sha256(source_url.encode("utf-8", "surrogatepass")).hexdigest()


def is_valid_key(key: str) -> bool:
    """Return True if key has the shape produced by derive_key()."""
    return _KEY_PATTERN.fullmatch(key) is not None
