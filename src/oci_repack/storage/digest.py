"""
Content digest helpers.

Digests use the OCI "<algorithm>:<hex>" form. Only algorithms registered
in the OCI image spec are accepted.
"""
from __future__ import annotations

import hashlib
import re

__all__ = ["SUPPORTED_ALGORITHMS", "DEFAULT_ALGORITHM", "parse_digest",
           "new_hasher", "compute_digest"]

DEFAULT_ALGORITHM = "sha256"

# algorithm -> length of the hex encoding
SUPPORTED_ALGORITHMS = {
    "sha256": 64,
    "sha512": 128,
}

_DIGEST_RE = re.compile(r"^([a-z0-9]+):([a-f0-9]+)$")


def parse_digest(digest: str) -> tuple[str, str]:
    """
    Split and validate a digest string.
    
    Args:
        digest: Digest such as "sha256:abc..."
        
    Returns:
        Tuple of (algorithm, hex)
        
    Raises:
        ValueError: If the digest is malformed or uses an unknown algorithm
    """
    m = _DIGEST_RE.match(digest or "")
    if not m:
        raise ValueError(f"invalid digest: {digest!r}")
    algorithm, encoded = m.groups()
    expected_len = SUPPORTED_ALGORITHMS.get(algorithm)
    if expected_len is None:
        raise ValueError(f"unsupported digest algorithm: {algorithm}")
    if len(encoded) != expected_len:
        raise ValueError(f"digest must be '{algorithm}:<{expected_len} hex chars>', got '{digest}'")
    return algorithm, encoded


def new_hasher(algorithm: str = DEFAULT_ALGORITHM):
    """Return a fresh hashlib object for a supported algorithm."""
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"unsupported digest algorithm: {algorithm}")
    return hashlib.new(algorithm)


def compute_digest(data: bytes, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Compute the digest string of an in-memory byte sequence."""
    h = new_hasher(algorithm)
    h.update(data)
    return f"{algorithm}:{h.hexdigest()}"
