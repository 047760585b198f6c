"""
Storage interfaces for oci-repack.

These protocols define the boundary between the CAS engine and the stores
it composes, enabling clean dependency injection and testing with fakes.
"""
from __future__ import annotations

from typing import BinaryIO, Optional, Protocol, Set, Union, runtime_checkable

from ..models import Descriptor

__all__ = ["BlobStore", "ReferenceStore"]


@runtime_checkable
class BlobStore(Protocol):
    """Protocol for digest-keyed blob storage."""

    algorithm: str

    def put(self, data: Union[bytes, BinaryIO], media_type: str = ...) -> Descriptor:
        """
        Store a blob and return its descriptor.

        The write must be atomic: the blob becomes visible under its digest
        only once fully written. Storing identical content twice is a no-op.

        Raises:
            OciDigestMismatch: If existing content under the digest differs
            OciStorageError: For I/O errors
        """
        ...

    def writer(self):
        """
        Start a streaming write.

        Returns:
            A writer with write(), stage(), commit(media_type) and abort()
        """
        ...

    def open(self, digest: str, expected_size: Optional[int] = None) -> BinaryIO:
        """
        Open a blob for reading.

        The returned stream raises OciDigestMismatch at EOF if the bytes do
        not hash to the digest.

        Raises:
            OciNotFound: If the blob does not exist
        """
        ...

    def read(self, digest: str, expected_size: Optional[int] = None) -> bytes:
        """Read and verify a whole blob."""
        ...

    def exists(self, digest: str) -> bool:
        ...

    def delete(self, digest: str) -> None:
        """Remove a blob; absence is not an error."""
        ...

    def list(self) -> Set[str]:
        ...


@runtime_checkable
class ReferenceStore(Protocol):
    """Protocol for mutable name -> descriptor storage."""

    def get(self, name: str) -> Descriptor:
        """
        Raises:
            OciNotFound: If the reference does not exist
        """
        ...

    def put(self, name: str, descriptor: Descriptor) -> None:
        """Create or atomically replace a reference."""
        ...

    def delete(self, name: str) -> None:
        """Remove a reference; absence is not an error."""
        ...

    def list(self) -> Set[str]:
        ...
