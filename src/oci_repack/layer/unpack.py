"""
Layer extraction.

Applies OCI layer blobs on top of a rootfs directory, honoring whiteouts, so
an image can be unpacked into a runtime bundle and so generated layers can be
replayed in tests.
"""
from __future__ import annotations

import gzip
import logging
import os
import posixpath
import shutil
import tarfile
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, List, Set, Tuple, Union

import zstandard as zstd

from ..path_safety import safe_relpath
from ..storage.blob_store import CHUNK_SIZE
from .packager import WHITEOUT_OPAQUE, WHITEOUT_PREFIX, LayerCompression

logger = logging.getLogger(__name__)

__all__ = ["apply_layer", "compression_for_media_type"]


def compression_for_media_type(media_type: str) -> LayerCompression:
    """Compression to undo when reading a layer blob of media_type."""
    return LayerCompression.from_media_type(media_type)


@contextmanager
def _decompressor(reader: BinaryIO, compression: LayerCompression):
    if compression == LayerCompression.NONE:
        yield reader
    elif compression == LayerCompression.GZIP:
        with gzip.GzipFile(fileobj=reader, mode="rb") as gz:
            yield gz
    else:
        with zstd.ZstdDecompressor().stream_reader(reader, closefd=False) as zr:
            yield zr


def _inside(root: Path, path: Path) -> Path:
    """Resolve path's parent and make sure it stays inside root."""
    real_root = os.path.realpath(root)
    real_parent = os.path.realpath(path.parent)
    if real_parent != real_root and not real_parent.startswith(real_root + os.sep):
        raise ValueError(f"layer entry escapes rootfs: {path}")
    return Path(real_parent) / path.name


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _clear_opaque_dir(root: Path, rel_dir: str, created: Set[str]) -> None:
    directory = _inside(root, root / rel_dir) if rel_dir else root
    if not directory.is_dir():
        return
    for child in directory.iterdir():
        rel = posixpath.join(rel_dir, child.name) if rel_dir else child.name
        if rel in created:
            continue
        _remove(child)


def _extract_member(tar: tarfile.TarFile, member: tarfile.TarInfo, root: Path,
                    rel: str, dir_times: List[Tuple[Path, float]]) -> None:
    target = _inside(root, root / rel)
    target.parent.mkdir(parents=True, exist_ok=True)

    if os.path.lexists(target) and not (member.isdir() and target.is_dir() and not target.is_symlink()):
        _remove(target)

    if member.isdir():
        target.mkdir(exist_ok=True)
    elif member.isreg():
        src = tar.extractfile(member)
        with src, open(target, "wb") as dst:
            shutil.copyfileobj(src, dst, CHUNK_SIZE)
    elif member.issym():
        os.symlink(member.linkname, target)
    elif member.islnk():
        link_source = _inside(root, root / safe_relpath(member.linkname, allow_backslash=True))
        os.link(link_source, target)
        return
    elif member.isfifo():
        os.mkfifo(target)
    elif member.ischr() or member.isblk():
        if os.geteuid() != 0:
            logger.warning(f"Skipping device node {rel}: requires root")
            return
        kind = 0o020000 if member.ischr() else 0o060000
        os.mknod(target, kind | member.mode, os.makedev(member.devmajor, member.devminor))
    else:
        logger.warning(f"Skipping unsupported tar entry type for {rel}")
        return

    if os.geteuid() == 0:
        os.lchown(target, member.uid, member.gid)
    if not member.issym():
        os.chmod(target, member.mode)

    if member.isdir():
        dir_times.append((target, member.mtime))
    else:
        mtime_ns = int(member.mtime * 1_000_000_000)
        try:
            os.utime(target, ns=(mtime_ns, mtime_ns), follow_symlinks=False)
        except NotImplementedError:
            # no lutimes on this platform
            if not member.issym():
                raise


def apply_layer(reader: BinaryIO, rootfs: Union[str, Path],
                compression: LayerCompression = LayerCompression.GZIP) -> int:
    """
    Apply one layer on top of rootfs.

    Whiteouts (".wh.<name>") delete the named path from lower layers and
    opaque whiteouts (".wh..wh..opq") empty their directory of lower-layer
    content. Whiteouts never remove entries created by the same layer.

    Args:
        reader: Layer blob stream (compressed as given)
        rootfs: Directory to apply onto; created if missing
        compression: Compression of the stream

    Returns:
        Number of tar entries processed

    Raises:
        ValueError: If an entry name would escape rootfs
        OciDigestMismatch: If reader is a verifying blob stream and the
            blob is corrupt
    """
    root = Path(rootfs)
    root.mkdir(parents=True, exist_ok=True)
    created: Set[str] = set()
    dir_times: List[Tuple[Path, float]] = []
    count = 0

    with _decompressor(reader, compression) as stream:
        with tarfile.open(fileobj=stream, mode="r|") as tar:
            for member in tar:
                count += 1
                if member.name.strip("/") in ("", "."):
                    # entry for the rootfs itself
                    continue
                rel = safe_relpath(member.name, allow_backslash=True)
                parent, base = posixpath.split(rel)

                if base == WHITEOUT_OPAQUE:
                    _clear_opaque_dir(root, parent, created)
                    continue
                if base.startswith(WHITEOUT_PREFIX):
                    victim_rel = posixpath.join(parent, base[len(WHITEOUT_PREFIX):])
                    if victim_rel in created:
                        continue
                    victim = _inside(root, root / victim_rel)
                    if os.path.lexists(victim):
                        _remove(victim)
                    continue

                _extract_member(tar, member, root, rel, dir_times)
                created.add(rel)

    # creating children bumps directory mtimes, so restore them last
    for path, mtime in reversed(dir_times):
        mtime_ns = int(mtime * 1_000_000_000)
        os.utime(path, ns=(mtime_ns, mtime_ns))

    # read any trailing bytes so a verifying reader checks the digest
    while reader.read(CHUNK_SIZE):
        pass

    logger.debug(f"Applied layer with {count} entries onto {root}")
    return count
