"""
Filesystem snapshots and changeset classification.

A snapshot records per-path metadata of a rootfs right after it is unpacked.
Comparing it with the live tree later yields the ordered changeset that the
layer packager turns into a diff layer. Only metadata named by the
snapshot's keywords is compared; file contents are compared only when the
"sha256" keyword is enabled.
"""
from __future__ import annotations

import hashlib
import logging
import os
import stat
import tempfile
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Union

from ..models import Change, ChangeKind, EntryMeta, EntryType, Snapshot
from ..settings import DEFAULT_SNAPSHOT_KEYWORDS, SNAPSHOT_KEYWORDS

logger = logging.getLogger(__name__)

__all__ = ["capture_snapshot", "diff_snapshots", "compute_changeset",
           "write_snapshot", "load_snapshot", "entry_meta"]

CHUNK_SIZE = 1024 * 1024


def _entry_type(mode: int) -> EntryType:
    if stat.S_ISREG(mode):
        return EntryType.FILE
    if stat.S_ISDIR(mode):
        return EntryType.DIR
    if stat.S_ISLNK(mode):
        return EntryType.SYMLINK
    return EntryType.OTHER


def _file_sha256(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def entry_meta(path: Path, keywords: Iterable[str] = DEFAULT_SNAPSHOT_KEYWORDS) -> EntryMeta:
    """
    Capture the tracked metadata of a single path without following symlinks.

    Fields not selected by keywords are left as None so they never take
    part in comparisons.
    """
    keywords = set(keywords)
    st = os.lstat(path)
    kind = _entry_type(st.st_mode)
    meta = EntryMeta(type=kind)
    if "mode" in keywords:
        meta.mode = stat.S_IMODE(st.st_mode)
    if "uid" in keywords:
        meta.uid = st.st_uid
    if "gid" in keywords:
        meta.gid = st.st_gid
    if "mtime" in keywords:
        meta.mtime = st.st_mtime_ns
    if kind == EntryType.FILE:
        if "size" in keywords:
            meta.size = st.st_size
        if "sha256" in keywords:
            meta.sha256 = _file_sha256(path)
    elif kind == EntryType.SYMLINK:
        meta.link_target = os.readlink(path)
    return meta


def capture_snapshot(rootfs: Union[str, Path],
                     keywords: Iterable[str] = DEFAULT_SNAPSHOT_KEYWORDS) -> Snapshot:
    """
    Record metadata for every path under rootfs.

    Args:
        rootfs: Root of the tree (not itself part of the snapshot)
        keywords: Metadata fields to record

    Returns:
        Snapshot keyed by POSIX relative path

    Raises:
        ValueError: If rootfs is not a directory or a keyword is unknown
    """
    root = Path(rootfs)
    if not root.is_dir():
        raise ValueError(f"rootfs is not a directory: {rootfs}")
    keywords = list(keywords)
    unknown = [k for k in keywords if k not in SNAPSHOT_KEYWORDS]
    if unknown:
        raise ValueError(f"Unknown snapshot keywords: {', '.join(unknown)}")

    entries: Dict[str, EntryMeta] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        for name in dirnames + filenames:
            full = base / name
            # Keys are on-disk names as-is, without Unicode or separator folding
            rel = PurePosixPath(os.path.relpath(full, root)).as_posix()
            entries[rel] = entry_meta(full, keywords)

    logger.debug(f"Captured snapshot of {root}: {len(entries)} entries")
    return Snapshot(keywords=keywords, entries=entries)


def diff_snapshots(before: Snapshot, after: Snapshot) -> List[Change]:
    """
    Classify the differences between two snapshots.

    Returns:
        Changes sorted by path. A parent always sorts before its children.
    """
    changes: List[Change] = []
    for path in sorted(set(before.entries) | set(after.entries)):
        old = before.entries.get(path)
        new = after.entries.get(path)
        if old is None:
            kind = ChangeKind.ADDED
        elif new is None:
            kind = ChangeKind.DELETED
        elif old.type != new.type:
            kind = ChangeKind.TYPE_CHANGED
        elif old != new:
            kind = ChangeKind.MODIFIED
        else:
            continue
        changes.append(Change(path=path, kind=kind, before=old, after=new))
    return changes


def compute_changeset(snapshot: Snapshot, rootfs: Union[str, Path]) -> List[Change]:
    """
    Compare a stored snapshot with the live tree at rootfs.

    The live tree is captured with the snapshot's own keywords so both sides
    track the same fields.
    """
    current = capture_snapshot(rootfs, snapshot.keywords)
    changes = diff_snapshots(snapshot, current)
    logger.info(f"Changeset for {rootfs}: {len(changes)} change(s)")
    return changes


def write_snapshot(snapshot: Snapshot, path: Union[str, Path]) -> None:
    """Write a snapshot as JSON, atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(snapshot.model_dump_json(exclude_none=True))
        os.replace(temp_path, path)
    except Exception:
        try:
            os.unlink(temp_path)
        except FileNotFoundError:
            pass
        raise


def load_snapshot(path: Union[str, Path]) -> Snapshot:
    """
    Load a snapshot written by write_snapshot().

    Raises:
        FileNotFoundError: If the snapshot file does not exist
    """
    return Snapshot.model_validate_json(Path(path).read_bytes())
