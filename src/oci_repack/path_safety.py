"""
Path and name safety utilities for oci-repack.

This module provides shared validation for paths that end up inside layer
archives or are read out of them, and for reference names that map onto
files in the image layout, to prevent directory traversal.
"""
from __future__ import annotations

import re
import unicodedata
from pathlib import PurePosixPath

__all__ = ["safe_relpath", "normalize_relpath", "validate_reference_name"]

_REF_NAME_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._-]{0,127}$")


def safe_relpath(path: str, *, allow_backslash: bool = False) -> str:
    """
    Validate and normalize an archive path to prevent traversal attacks.

    This function enforces the following safety rules:
    - No empty strings or "." (the rootfs itself is never an entry)
    - No absolute paths (starting with '/') after stripping a leading "./"
    - No parent directory references ('..' components)
    - No NUL bytes, and no backslashes unless allow_backslash is set

    Args:
        path: Path taken from an archive member or a user argument
        allow_backslash: Accept backslash as an ordinary name character, as
            POSIX filesystems and tar archives do

    Returns:
        Normalized relative path safe for use

    Raises:
        ValueError: If path violates safety rules

    Examples:
        >>> safe_relpath("./etc/passwd")
        'etc/passwd'

        >>> safe_relpath("usr/bin/")
        'usr/bin'

        >>> safe_relpath("../secrets.txt")
        ValueError: unsafe path: ../secrets.txt
    """
    if "\x00" in path:
        raise ValueError(f"path contains NUL byte: {path!r}")
    stripped = path
    while stripped.startswith("./"):
        stripped = stripped[2:]
    rel = PurePosixPath(stripped)
    s = str(rel)
    if not s or s == ".":
        raise ValueError(f"unsafe path: {path}")
    if not allow_backslash and "\\" in s:
        raise ValueError(f"unsafe path: {path}")
    if rel.is_absolute() or ".." in rel.parts:
        raise ValueError(f"unsafe path: {path}")
    return s


def normalize_relpath(path: str) -> str:
    """
    Normalize a host-relative path for use as an archive name.

    Converts backslashes to forward slashes, applies NFC normalization and
    then the safe_relpath rules.
    """
    normalized = unicodedata.normalize('NFC', path.replace('\\', '/'))
    return safe_relpath(normalized)


def validate_reference_name(name: str) -> str:
    """
    Validate a reference (tag) name.

    Names become file names under refs/, so they must be a single path
    component: 1-128 characters from [A-Za-z0-9._-], not starting with
    '.' or '-'.

    Raises:
        ValueError: If the name is not a valid tag
    """
    if not name or not _REF_NAME_RE.match(name):
        raise ValueError(f"invalid reference name: {name!r}")
    return name
