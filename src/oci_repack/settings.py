"""
Settings and configuration for oci-repack.

Centralizes configuration values and provides validation with fail-fast behavior.
Loads settings from environment variables when the CLI builds its context.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Tuple

from .storage.digest import SUPPORTED_ALGORITHMS

__all__ = ["Settings", "create_settings_from_env", "COMPRESSIONS", "SNAPSHOT_KEYWORDS",
           "DEFAULT_SNAPSHOT_KEYWORDS"]

COMPRESSIONS = ("none", "gzip", "zstd")

# "type" and "link" are always compared, the rest are optional
SNAPSHOT_KEYWORDS = ("type", "mode", "uid", "gid", "size", "mtime", "link", "sha256")
DEFAULT_SNAPSHOT_KEYWORDS = ("type", "mode", "uid", "gid", "size", "mtime", "link")

_TAG_PATTERN = r"^[A-Za-z0-9_][A-Za-z0-9._-]{0,127}$"


@dataclass(frozen=True)
class Settings:
    """
    Configuration settings for image mutation.

    Layer Settings:
        compression: Compression for new layer blobs ("gzip", "zstd" or "none")
        zstd_level: Zstandard level used when compression is "zstd"

    Store Settings:
        digest_algorithm: Algorithm for new blobs ("sha256" or "sha512")
        fsync: Flush blobs and references to disk before renaming them in place
        default_tag: Tag used when --image names no tag

    Snapshot Settings:
        snapshot_keywords: Metadata fields compared when classifying changes
    """
    compression: str = "gzip"
    zstd_level: int = 3
    digest_algorithm: str = "sha256"
    fsync: bool = True
    default_tag: str = "latest"
    snapshot_keywords: Tuple[str, ...] = DEFAULT_SNAPSHOT_KEYWORDS

    def __post_init__(self):
        """Validate settings on construction."""
        if self.compression not in COMPRESSIONS:
            raise ValueError(f"compression must be one of {', '.join(COMPRESSIONS)}, got {self.compression!r}")

        # zstd accepts 1..22; negative "fast" levels are not deterministic across versions
        if not 1 <= self.zstd_level <= 22:
            raise ValueError(f"zstd_level must be between 1 and 22, got {self.zstd_level}")

        if self.digest_algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported digest_algorithm: {self.digest_algorithm}")

        if not re.match(_TAG_PATTERN, self.default_tag):
            raise ValueError(f"Invalid default_tag format: {self.default_tag}")

        unknown = [k for k in self.snapshot_keywords if k not in SNAPSHOT_KEYWORDS]
        if unknown:
            raise ValueError(f"Unknown snapshot keywords: {', '.join(unknown)}")

        for required in ("type", "link"):
            if required not in self.snapshot_keywords:
                raise ValueError(f"snapshot_keywords must include '{required}'")


def create_settings_from_env() -> Settings:
    """
    Load settings from environment variables.

    Environment Variables:
        - OCI_REPACK_COMPRESSION (default: gzip)
        - OCI_REPACK_ZSTD_LEVEL (default: 3)
        - OCI_REPACK_DIGEST_ALGORITHM (default: sha256)
        - OCI_REPACK_FSYNC (default: true)
        - OCI_REPACK_DEFAULT_TAG (default: latest)
        - OCI_REPACK_SNAPSHOT_KEYWORDS (comma separated, default:
          type,mode,uid,gid,size,mtime,link)

    Returns:
        Settings object with validated configuration

    Raises:
        ValueError: If configuration is invalid

    Note:
        Creates a fresh Settings instance every time (no caching).
        This ensures test isolation and eliminates global state.
    """
    def str_to_bool(value: str) -> bool:
        return value.lower() in ('true', '1', 'yes', 'on')

    def get_int(key: str, default: int) -> int:
        value = os.getenv(key)
        return int(value) if value else default

    keywords_raw = os.getenv("OCI_REPACK_SNAPSHOT_KEYWORDS")
    if keywords_raw:
        keywords = tuple(k.strip() for k in keywords_raw.split(",") if k.strip())
    else:
        keywords = DEFAULT_SNAPSHOT_KEYWORDS

    return Settings(
        compression=os.getenv("OCI_REPACK_COMPRESSION", "gzip"),
        zstd_level=get_int("OCI_REPACK_ZSTD_LEVEL", 3),
        digest_algorithm=os.getenv("OCI_REPACK_DIGEST_ALGORITHM", "sha256"),
        fsync=str_to_bool(os.getenv("OCI_REPACK_FSYNC", "true")),
        default_tag=os.getenv("OCI_REPACK_DEFAULT_TAG", "latest"),
        snapshot_keywords=keywords,
    )
