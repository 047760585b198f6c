"""
Directory-backed content-addressed blob store.

Blobs live at blobs/<algorithm>/<hex> under the image root. Every write goes
to a temporary file under tmp/ first and is renamed into place only once its
digest is known, so a blob path either does not exist or holds the complete
content. Existing blobs are never rewritten with different bytes.
"""
from __future__ import annotations

import io
import logging
import os
import tempfile
from pathlib import Path
from typing import BinaryIO, Optional, Set, Union

from .digest import DEFAULT_ALGORITHM, SUPPORTED_ALGORITHMS, new_hasher, parse_digest
from .oci_errors import OciDigestMismatch, OciInvalidState, OciNotFound, OciStorageError
from .oci_media_types import BLOBS_DIR, OCI_GENERIC_BLOB, TMP_DIR
from ..models import Descriptor

logger = logging.getLogger(__name__)

__all__ = ["DirBlobStore", "BlobWriter", "VerifiedBlobReader", "CHUNK_SIZE"]

CHUNK_SIZE = 1024 * 1024  # 1 MiB


class VerifiedBlobReader(io.RawIOBase):
    """
    Read-only stream over a blob that checks its digest at EOF.

    The check only happens when the stream is read to the end; a partial
    read is not an integrity statement.
    """

    def __init__(self, fileobj: BinaryIO, digest: str, expected_size: Optional[int] = None):
        super().__init__()
        algorithm, self._expected_hex = parse_digest(digest)
        self.digest = digest
        self._f = fileobj
        self._hash = new_hasher(algorithm)
        self._size = 0
        self._expected_size = expected_size
        self._verified = False

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        n = self._f.readinto(b)
        if n:
            self._hash.update(memoryview(b)[:n])
            self._size += n
        elif len(b) > 0:
            self._verify()
        return n

    def _verify(self) -> None:
        if self._verified:
            return
        actual = self._hash.hexdigest()
        if actual != self._expected_hex:
            raise OciDigestMismatch(
                f"blob {self.digest} content hashes to {actual}",
                expected=self._expected_hex,
                actual=actual,
            )
        if self._expected_size is not None and self._size != self._expected_size:
            raise OciDigestMismatch(
                f"blob {self.digest} is {self._size} bytes, descriptor says {self._expected_size}",
                expected=str(self._expected_size),
                actual=str(self._size),
            )
        self._verified = True

    def close(self) -> None:
        if not self.closed:
            self._f.close()
        super().close()


class BlobWriter:
    """
    Streaming writer for a new blob.

    Bytes are hashed as they are written to a temporary file. stage() ends
    the write and fixes digest and size without making the blob visible;
    commit() renames it into place. Leaving the context manager without a
    commit discards the temporary file.
    """

    def __init__(self, store: DirBlobStore):
        self._store = store
        self.algorithm = store.algorithm
        self._hash = new_hasher(store.algorithm)
        self.size = 0
        self.digest: Optional[str] = None
        self._committed = False
        self._aborted = False
        try:
            store.tmp_dir.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(prefix=".blob.", dir=store.tmp_dir)
        except OSError as e:
            raise OciStorageError("create_blob", str(store.tmp_dir), e) from e
        self._temp_path = Path(temp_path)
        self._file: Optional[BinaryIO] = os.fdopen(fd, "wb")

    # File-like surface used by tarfile, gzip and zstandard
    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        if self._file is None:
            raise OciInvalidState("write to a blob writer that is no longer open")
        view = memoryview(data)
        self._file.write(view)
        self._hash.update(view)
        self.size += view.nbytes
        return view.nbytes

    def flush(self) -> None:
        if self._file is not None:
            self._file.flush()

    def stage(self) -> tuple[str, int]:
        """
        Finish writing and compute the digest.

        Returns:
            Tuple of (digest, size)
        """
        if self._aborted:
            raise OciInvalidState("blob writer was aborted")
        if self.digest is None:
            try:
                self._file.flush()
                if self._store.fsync:
                    os.fsync(self._file.fileno())
                self._file.close()
            except OSError as e:
                raise OciStorageError("stage_blob", str(self._temp_path), e) from e
            self._file = None
            self.digest = f"{self._store.algorithm}:{self._hash.hexdigest()}"
        return self.digest, self.size

    def commit(self, media_type: str = OCI_GENERIC_BLOB) -> Descriptor:
        """Publish the blob under its digest and return its descriptor."""
        if self._committed:
            return Descriptor(media_type=media_type, digest=self.digest, size=self.size)
        digest, size = self.stage()
        self._store._publish(self._temp_path, digest, size)
        self._committed = True
        return Descriptor(media_type=media_type, digest=digest, size=size)

    def abort(self) -> None:
        """Discard the temporary file. No-op after commit."""
        if self._committed or self._aborted:
            return
        self._aborted = True
        if self._file is not None:
            try:
                self._file.close()
            except OSError:
                pass
            self._file = None
        try:
            self._temp_path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> BlobWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._committed:
            self.abort()


class DirBlobStore:
    """
    Content-addressed blob storage in an image layout directory.

    Write path:
    - Hash while streaming into tmp/
    - fsync, then a single os.replace() into blobs/<alg>/<hex>
    - If the destination already exists the new copy is dropped (idempotent)
    """

    def __init__(self, root: Union[str, Path], *, algorithm: str = DEFAULT_ALGORITHM,
                 fsync: bool = True):
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"unsupported digest algorithm: {algorithm}")
        self.root = Path(root)
        self.algorithm = algorithm
        self.fsync = fsync
        self.blobs_dir = self.root / BLOBS_DIR
        self.tmp_dir = self.root / TMP_DIR

    def blob_path(self, digest: str) -> Path:
        """Map a digest onto its file path."""
        algorithm, encoded = parse_digest(digest)
        return self.blobs_dir / algorithm / encoded

    def writer(self) -> BlobWriter:
        """Start a streaming write."""
        return BlobWriter(self)

    def put(self, data: Union[bytes, BinaryIO], media_type: str = OCI_GENERIC_BLOB) -> Descriptor:
        """
        Store a blob and return its descriptor.

        Args:
            data: Blob content (bytes or readable file-like object)
            media_type: Media type recorded in the returned descriptor

        Returns:
            Descriptor with the computed digest and size

        Raises:
            OciDigestMismatch: If a blob with this digest exists with a different size
            OciStorageError: For filesystem failures
        """
        with self.writer() as w:
            if isinstance(data, (bytes, bytearray, memoryview)):
                w.write(data)
            else:
                while True:
                    chunk = data.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    w.write(chunk)
            return w.commit(media_type)

    def _publish(self, temp_path: Path, digest: str, size: int) -> None:
        final = self.blob_path(digest)
        try:
            final.parent.mkdir(parents=True, exist_ok=True)
            if final.exists():
                existing = final.stat().st_size
                temp_path.unlink()
                if existing != size:
                    raise OciDigestMismatch(
                        f"existing blob {digest} is {existing} bytes, new content is {size} bytes",
                        expected=str(size),
                        actual=str(existing),
                    )
                logger.debug(f"Blob {digest} already present, skipping write")
                return
            os.replace(temp_path, final)
            stored = final.stat().st_size
        except OSError as e:
            raise OciStorageError("put_blob", digest, e) from e

        if stored != size:
            raise OciDigestMismatch(
                f"blob {digest} is {stored} bytes after rename, wrote {size}",
                expected=str(size),
                actual=str(stored),
            )
        logger.debug(f"Stored blob {digest} ({size} bytes)")

    def open(self, digest: str, expected_size: Optional[int] = None) -> VerifiedBlobReader:
        """
        Open a blob for streaming reads.

        Raises:
            OciNotFound: If the blob does not exist
            OciStorageError: For other filesystem failures
        """
        path = self.blob_path(digest)
        try:
            f = open(path, "rb")
        except FileNotFoundError:
            raise OciNotFound(f"blob not found: {digest}") from None
        except OSError as e:
            raise OciStorageError("get_blob", digest, e) from e
        return VerifiedBlobReader(f, digest, expected_size)

    def read(self, digest: str, expected_size: Optional[int] = None) -> bytes:
        """Read and verify a whole blob."""
        with self.open(digest, expected_size) as f:
            return f.read()

    def exists(self, digest: str) -> bool:
        return self.blob_path(digest).is_file()

    def delete(self, digest: str) -> None:
        """
        Remove a blob. Deleting a missing blob is not an error.

        Callers are responsible for making sure no reference or manifest
        still needs it; the store does no reference counting.
        """
        path = self.blob_path(digest)
        try:
            path.unlink()
            logger.debug(f"Deleted blob {digest}")
        except FileNotFoundError:
            pass
        except OSError as e:
            raise OciStorageError("delete_blob", digest, e) from e

    def list(self) -> Set[str]:
        """List all blob digests in the store."""
        digests: Set[str] = set()
        if not self.blobs_dir.exists():
            return digests
        for alg_dir in self.blobs_dir.iterdir():
            if not alg_dir.is_dir() or alg_dir.name not in SUPPORTED_ALGORITHMS:
                continue
            for blob in alg_dir.iterdir():
                if blob.is_file():
                    digests.add(f"{alg_dir.name}:{blob.name}")
        return digests
