"""
Image building helpers for tests.

Builds small layer tars in memory and assembles them into tagged images in
an image layout, without going through the mutator, so tests can start from
a known base image.
"""
import io
import tarfile
from typing import Dict, List, Optional, Tuple, Union

from oci_repack.layer.packager import LayerCompression, write_layer_blob
from oci_repack.models import DescriptorPath, History, ImageConfig, Index, Manifest, RootFS
from oci_repack.storage.engine import CasEngine
from oci_repack.storage.oci_media_types import OCI_IMAGE_CONFIG, OCI_IMAGE_INDEX, OCI_IMAGE_MANIFEST

FIXED_TIME = "2024-01-01T00:00:00Z"

# name -> bytes (file), None (directory), ("->", target) (symlink)
LayerEntries = Dict[str, Union[bytes, None, Tuple[str, str]]]


def make_layer_tar(entries: LayerEntries, mtime: int = 1_700_000_000) -> bytes:
    """Build an uncompressed layer tar; entries are written in sorted order."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for name in sorted(entries):
            value = entries[name]
            info = tarfile.TarInfo(name)
            info.mtime = mtime
            if value is None:
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
            elif isinstance(value, tuple):
                info.type = tarfile.SYMTYPE
                info.linkname = value[1]
                info.mode = 0o777
                tar.addfile(info)
            else:
                info.mode = 0o644
                info.size = len(value)
                tar.addfile(info, io.BytesIO(value))
    return buf.getvalue()


def build_image(engine: CasEngine, tag: Optional[str], layers: List[bytes], *,
                compression: LayerCompression = LayerCompression.GZIP,
                history: Optional[List[History]] = None,
                created: str = FIXED_TIME) -> DescriptorPath:
    """
    Store layers plus matching config and manifest, and tag the manifest.

    Args:
        engine: Open engine
        tag: Tag to point at the manifest (None to leave it untagged)
        layers: Uncompressed layer tars, bottom first
        compression: Compression for every layer
        history: History entries (default: one per layer)
        created: Config creation timestamp

    Returns:
        Single-element descriptor path to the manifest
    """
    descriptors = []
    diff_ids = []
    for layer in layers:
        with engine.blob_writer() as writer:
            digests = write_layer_blob(io.BytesIO(layer), writer, compression)
            descriptors.append(writer.commit(digests.media_type))
        diff_ids.append(digests.diff_id)

    if history is None:
        history = [History(created=FIXED_TIME, created_by=f"layer {i}") for i in range(len(layers))]

    config = ImageConfig(
        created=created,
        architecture="amd64",
        os="linux",
        config={"Env": ["PATH=/usr/bin:/bin"]},
        rootfs=RootFS(diff_ids=diff_ids),
        history=history,
    )
    config_desc = engine.put_blob_json(config, OCI_IMAGE_CONFIG)
    manifest_desc = engine.put_blob_json(Manifest(config=config_desc, layers=descriptors),
                                         OCI_IMAGE_MANIFEST)
    if tag is not None:
        engine.update_reference(tag, manifest_desc)
    return DescriptorPath(walk=[manifest_desc])


def build_index(engine: CasEngine, tag: str, manifests: List[DescriptorPath]) -> DescriptorPath:
    """Tag an index listing the given manifests."""
    children = [p.descriptor() for p in manifests]
    index_desc = engine.put_blob_json(Index(manifests=children), OCI_IMAGE_INDEX)
    engine.update_reference(tag, index_desc)
    return DescriptorPath(walk=[index_desc])


BASE_ENTRIES: LayerEntries = {
    "bin": None,
    "bin/sh": b"#!/bin/true\n",
    "etc": None,
    "etc/hostname": b"base\n",
    "etc/os-release": b"NAME=test\n",
    "lib": ("->", "usr/lib"),
    "usr": None,
    "usr/lib": None,
    "usr/lib/libc.so": b"\x7fELF" + b"\x00" * 64,
    "var": None,
    "var/cache": None,
    "var/cache/a": b"a",
    "var/cache/b": b"b",
}
