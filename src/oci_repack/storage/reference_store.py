"""
Directory-backed reference (tag) store.

Each reference is a file refs/<name> holding the JSON descriptor it points
at. References are the only mutable objects in an image layout; they are
replaced with a temp-write plus rename so a reader never observes a
half-written descriptor.
"""
from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Set, Union

from pydantic import ValidationError

from .oci_errors import OciNotFound, OciStorageError
from .oci_media_types import REFS_DIR
from ..models import Descriptor, canonical_json
from ..path_safety import validate_reference_name

logger = logging.getLogger(__name__)

__all__ = ["DirReferenceStore"]


class DirReferenceStore:
    """Named pointers to descriptors, independent of the blob namespace."""

    def __init__(self, root: Union[str, Path], *, fsync: bool = True):
        self.root = Path(root)
        self.refs_dir = self.root / REFS_DIR
        self.fsync = fsync

    def ref_path(self, name: str) -> Path:
        return self.refs_dir / validate_reference_name(name)

    def get(self, name: str) -> Descriptor:
        """
        Look up a reference.

        Raises:
            OciNotFound: If no reference with this name exists
            OciStorageError: If the reference file cannot be read or parsed
        """
        path = self.ref_path(name)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise OciNotFound(f"reference not found: {name}") from None
        except OSError as e:
            raise OciStorageError("get_reference", name, e) from e
        try:
            return Descriptor.model_validate_json(data)
        except ValidationError as e:
            raise OciStorageError("get_reference", name, e) from e

    def put(self, name: str, descriptor: Descriptor) -> None:
        """Create or atomically replace a reference."""
        path = self.ref_path(name)
        payload = canonical_json(descriptor)
        temp_path = None
        try:
            self.refs_dir.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(prefix=f".{name}.", suffix=".tmp", dir=self.refs_dir)
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                if self.fsync:
                    os.fsync(f.fileno())
            os.replace(temp_path, path)
            temp_path = None
        except OSError as e:
            raise OciStorageError("put_reference", name, e) from e
        finally:
            if temp_path is not None and os.path.exists(temp_path):
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass
        logger.debug(f"Reference {name} -> {descriptor.digest}")

    def delete(self, name: str) -> None:
        """Remove a reference. A missing reference is not an error."""
        path = self.ref_path(name)
        try:
            path.unlink()
            logger.debug(f"Deleted reference {name}")
        except FileNotFoundError:
            pass
        except OSError as e:
            raise OciStorageError("delete_reference", name, e) from e

    def list(self) -> Set[str]:
        """List reference names. No ordering is implied."""
        if not self.refs_dir.exists():
            return set()
        names = set()
        for entry in self.refs_dir.iterdir():
            # skip in-flight temporaries
            if entry.name.startswith(".") or not entry.is_file():
                continue
            names.add(entry.name)
        return names
