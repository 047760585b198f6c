"""
Diff layer generation.

Turns a changeset (or a host path to insert) into an OCI layer tar stream and
compresses that stream into a blob. Entries are written in path order with
normalized tar headers so identical changes produce identical layer bytes.
Deletions are encoded as AUFS-style whiteout entries.
"""
from __future__ import annotations

import gzip
import logging
import os
import posixpath
import tarfile
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Iterator, List, Set, Tuple, Union

import zstandard as zstd

from ..models import Change, ChangeKind
from ..path_safety import normalize_relpath, safe_relpath
from ..storage.blob_store import CHUNK_SIZE, BlobWriter
from ..storage.digest import new_hasher
from ..storage.oci_errors import OciUnsupportedMediaType
from ..storage.oci_media_types import (
    OCI_IMAGE_LAYER,
    OCI_IMAGE_LAYER_GZIP,
    OCI_IMAGE_LAYER_NONDIST,
    OCI_IMAGE_LAYER_NONDIST_GZIP,
    OCI_IMAGE_LAYER_NONDIST_ZSTD,
    OCI_IMAGE_LAYER_ZSTD,
)

logger = logging.getLogger(__name__)

__all__ = [
    "WHITEOUT_PREFIX",
    "WHITEOUT_OPAQUE",
    "LayerCompression",
    "LayerDigests",
    "whiteout_name",
    "generate_layer",
    "generate_insert_layer",
    "write_layer_blob",
]

WHITEOUT_PREFIX = ".wh."
WHITEOUT_OPAQUE = WHITEOUT_PREFIX + WHITEOUT_PREFIX + ".opq"

# Layers larger than this spill from memory to a temporary file
SPOOL_MAX_SIZE = 16 * 1024 * 1024


class LayerCompression(str, Enum):
    """Compression applied to a layer blob."""
    NONE = "none"
    GZIP = "gzip"
    ZSTD = "zstd"

    @property
    def media_type(self) -> str:
        return _MEDIA_TYPES[self]

    @classmethod
    def from_media_type(cls, media_type: str) -> LayerCompression:
        """
        Map a layer media type onto its compression.

        Raises:
            OciUnsupportedMediaType: If media_type is not a known layer type
        """
        try:
            return _COMPRESSION_BY_MEDIA_TYPE[media_type]
        except KeyError:
            raise OciUnsupportedMediaType(f"not a layer media type: {media_type}") from None


_MEDIA_TYPES = {
    LayerCompression.NONE: OCI_IMAGE_LAYER,
    LayerCompression.GZIP: OCI_IMAGE_LAYER_GZIP,
    LayerCompression.ZSTD: OCI_IMAGE_LAYER_ZSTD,
}

_COMPRESSION_BY_MEDIA_TYPE = {
    OCI_IMAGE_LAYER: LayerCompression.NONE,
    OCI_IMAGE_LAYER_NONDIST: LayerCompression.NONE,
    OCI_IMAGE_LAYER_GZIP: LayerCompression.GZIP,
    OCI_IMAGE_LAYER_NONDIST_GZIP: LayerCompression.GZIP,
    OCI_IMAGE_LAYER_ZSTD: LayerCompression.ZSTD,
    OCI_IMAGE_LAYER_NONDIST_ZSTD: LayerCompression.ZSTD,
}


@dataclass(frozen=True)
class LayerDigests:
    """Identity of a staged layer blob."""
    diff_id: str      # digest of the uncompressed tar
    digest: str       # digest of the blob as stored
    size: int         # stored size in bytes
    media_type: str


def whiteout_name(path: str) -> str:
    """Archive name of the whiteout that deletes path."""
    parent, base = posixpath.split(path)
    return posixpath.join(parent, WHITEOUT_PREFIX + base)


def _apply_layer_headers(tarinfo: tarfile.TarInfo) -> None:
    """
    Normalize tar headers for reproducible layers.

    Ownership and permissions are part of the image and are kept; user and
    group names are dropped and timestamps truncated to whole seconds so no
    PAX time records are emitted.
    """
    tarinfo.uname = ""
    tarinfo.gname = ""
    tarinfo.mtime = int(tarinfo.mtime)


def _whiteout_info(path: str) -> tarfile.TarInfo:
    info = tarfile.TarInfo(whiteout_name(path))
    info.type = tarfile.REGTYPE
    info.size = 0
    info.mode = 0o644
    info.mtime = 0
    return info


def _add_path(tar: tarfile.TarFile, full: Path, arcname: str) -> None:
    tarinfo = tar.gettarinfo(str(full), arcname=arcname)
    if tarinfo is None:
        # sockets and other types tar cannot represent
        logger.warning(f"Skipping unsupported file type: {arcname}")
        return
    _apply_layer_headers(tarinfo)
    if tarinfo.isreg():
        with open(full, 'rb') as entry_file:
            tar.addfile(tarinfo, entry_file)
    else:
        tar.addfile(tarinfo)


def _under_removed(path: str, removed: Set[str]) -> bool:
    return any(str(parent) in removed for parent in PurePosixPath(path).parents)


def generate_layer(rootfs: Union[str, Path], changeset: List[Change]) -> BinaryIO:
    """
    Serialize a changeset into an uncompressed layer tar.

    One entry is emitted per change, in changeset order:
    - DELETED: a whiteout, unless an ancestor was already whited out
    - TYPE_CHANGED: a whiteout followed by the new entry
    - ADDED / MODIFIED: the entry with full metadata (and content for files)

    Only paths named in the changeset are read from rootfs.

    Args:
        rootfs: Root of the live tree the changeset was computed against
        changeset: Changes sorted by path

    Returns:
        Readable stream positioned at the start of the tar
    """
    root = Path(rootfs)
    out = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE)
    removed: Set[str] = set()
    n_entries = 0
    try:
        with tarfile.open(fileobj=out, mode='w', format=tarfile.PAX_FORMAT) as tar:
            for change in changeset:
                path = safe_relpath(change.path, allow_backslash=True)
                if change.kind in (ChangeKind.DELETED, ChangeKind.TYPE_CHANGED):
                    if change.kind == ChangeKind.DELETED and _under_removed(path, removed):
                        continue
                    tar.addfile(_whiteout_info(path))
                    removed.add(path)
                    n_entries += 1
                if change.kind in (ChangeKind.ADDED, ChangeKind.MODIFIED, ChangeKind.TYPE_CHANGED):
                    _add_path(tar, root / path, path)
                    n_entries += 1
    except Exception:
        out.close()
        raise
    out.seek(0)
    logger.debug(f"Generated layer with {n_entries} entries from {len(changeset)} change(s)")
    return out


def _iter_insert_entries(source: Path, target: str) -> Iterator[Tuple[Path, str]]:
    """Yield (host path, archive name) pairs for an insert, sorted by archive name."""
    entries = [(source, target)]
    if source.is_dir() and not source.is_symlink():
        for root, dirs, files in os.walk(source):
            root_path = Path(root)
            for name in dirs + files:
                full = root_path / name
                rel = normalize_relpath(str(full.relative_to(source)))
                entries.append((full, f"{target}/{rel}"))
    entries.sort(key=lambda x: x[1])
    yield from entries


def generate_insert_layer(source: Union[str, Path], target: str, *,
                          opaque: bool = False) -> BinaryIO:
    """
    Build a layer that places a host file or directory at target.

    Args:
        source: Host path to insert (directories are inserted recursively)
        target: Absolute or relative destination path inside the image
        opaque: For directories, hide whatever lower layers had under target

    Returns:
        Readable stream positioned at the start of the tar

    Raises:
        FileNotFoundError: If source does not exist
        ValueError: If target is not a safe path
    """
    source = Path(source)
    if not os.path.lexists(source):
        raise FileNotFoundError(f"insert source not found: {source}")
    target = safe_relpath(target.lstrip("/"))

    out = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE)
    try:
        with tarfile.open(fileobj=out, mode='w', format=tarfile.PAX_FORMAT) as tar:
            for full, arcname in _iter_insert_entries(source, target):
                _add_path(tar, full, arcname)
                if opaque and arcname == target and source.is_dir():
                    info = tarfile.TarInfo(f"{target}/{WHITEOUT_OPAQUE}")
                    info.mode = 0o644
                    tar.addfile(info)
    except Exception:
        out.close()
        raise
    out.seek(0)
    logger.debug(f"Generated insert layer for {source} -> /{target}")
    return out


@contextmanager
def _compressor(writer: BlobWriter, compression: LayerCompression, zstd_level: int):
    if compression == LayerCompression.NONE:
        yield writer
    elif compression == LayerCompression.GZIP:
        # fixed header mtime keeps the blob digest reproducible
        with gzip.GzipFile(filename="", mode="wb", fileobj=writer, mtime=0) as gz:
            yield gz
    elif compression == LayerCompression.ZSTD:
        compressor = zstd.ZstdCompressor(level=zstd_level)
        with compressor.stream_writer(writer, closefd=False) as zw:
            yield zw
    else:
        raise OciUnsupportedMediaType(f"unsupported layer compression: {compression}")


def write_layer_blob(reader: BinaryIO, writer: BlobWriter,
                     compression: LayerCompression = LayerCompression.GZIP, *,
                     zstd_level: int = 3) -> LayerDigests:
    """
    Compress an uncompressed layer stream into a blob writer.

    The uncompressed bytes are hashed (diffID) on their way into the
    compressor while the writer hashes the compressed output, so both
    digests come out of a single pass over the stream. The blob is staged
    but not published.

    Args:
        reader: Uncompressed tar stream
        writer: Open blob writer to receive the compressed bytes
        compression: Compression to apply
        zstd_level: Level used for zstd

    Returns:
        LayerDigests for the staged blob
    """
    compression = LayerCompression(compression)
    diff_hash = new_hasher(writer.algorithm)
    with _compressor(writer, compression, zstd_level) as sink:
        while True:
            chunk = reader.read(CHUNK_SIZE)
            if not chunk:
                break
            diff_hash.update(chunk)
            sink.write(chunk)
    digest, size = writer.stage()
    return LayerDigests(
        diff_id=f"{writer.algorithm}:{diff_hash.hexdigest()}",
        digest=digest,
        size=size,
        media_type=compression.media_type,
    )
