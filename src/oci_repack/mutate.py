"""
Image mutation.

A Mutator turns an existing image manifest into a new one: it works on an
in-memory copy of the manifest and config, stages new layer blobs without
publishing them, and only writes anything visible on commit(). The write
order on commit is layer blobs, then config, then manifest, then any parent
indexes, so an interrupted commit leaves the old image intact and at worst
some unreferenced blobs behind. Nothing here touches references; callers
repoint tags with the returned descriptor path.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, BinaryIO, Dict, List, Optional, Tuple

from .history import check_history, history_is_consistent
from .layer.packager import LayerCompression, write_layer_blob
from .models import Descriptor, DescriptorPath, History, ImageConfig, Index, Manifest
from .storage.blob_store import BlobWriter
from .storage.engine import CasEngine
from .storage.oci_errors import OciAmbiguousReference, OciInvalidState, OciNotFound
from .storage.oci_media_types import OCI_IMAGE_CONFIG, OCI_IMAGE_INDEX, OCI_IMAGE_MANIFEST

logger = logging.getLogger(__name__)

__all__ = ["Mutator", "resolve_single"]


def resolve_single(engine: CasEngine, name: str) -> DescriptorPath:
    """
    Resolve a reference that must designate exactly one image manifest.

    Raises:
        OciNotFound: If the reference does not exist or reaches no manifest
        OciAmbiguousReference: If it reaches more than one manifest
    """
    paths = engine.resolve_reference(name)
    if not paths:
        raise OciNotFound(f"tag not found: {name}")
    if len(paths) != 1:
        raise OciAmbiguousReference(f"tag is ambiguous: {name} resolves to {len(paths)} manifests")
    return paths[0]


class _State(str, Enum):
    NEW = "new"
    OPEN = "open"
    COMMITTED = "committed"
    ABANDONED = "abandoned"


class Mutator:
    """
    Open -> add/set_config (any number) -> commit.

    Each add() and set_config() appends exactly one history entry. After a
    commit, or after a failed commit, the mutator must be opened again.
    """

    def __init__(self, engine: CasEngine, *,
                 compression: LayerCompression = LayerCompression.GZIP,
                 zstd_level: int = 3):
        self.engine = engine
        self.compression = LayerCompression(compression)
        self.zstd_level = zstd_level
        self._state = _State.NEW
        self._source: Optional[DescriptorPath] = None
        self._manifest: Optional[Manifest] = None
        self._config: Optional[ImageConfig] = None
        self._pending: List[Tuple[BlobWriter, str]] = []
        self._base_consistent = True

    @classmethod
    def from_path(cls, engine: CasEngine, source: DescriptorPath, **kwargs: Any) -> Mutator:
        mutator = cls(engine, **kwargs)
        mutator.open(source)
        return mutator

    @property
    def state(self) -> str:
        return self._state.value

    def _ensure_open(self, operation: str) -> None:
        if self._state != _State.OPEN:
            raise OciInvalidState(f"{operation} called on a mutator that is {self._state.value}; call open() first")

    def open(self, source: DescriptorPath) -> None:
        """
        Load the base image the mutation starts from.

        Args:
            source: Path whose last descriptor is an image manifest

        Raises:
            OciInvalidState: If the path does not end at an image manifest
            OciNotFound: If the manifest or config blob is missing
        """
        self._discard_pending()
        target = source.descriptor()
        if target.media_type != OCI_IMAGE_MANIFEST:
            raise OciInvalidState(
                f"base descriptor {target.digest} is {target.media_type}, not an image manifest"
            )

        manifest = self.engine.get_blob(target).data
        config = self.engine.get_blob(manifest.config).data
        if not isinstance(config, ImageConfig):
            raise OciInvalidState(f"config {manifest.config.digest} is not an image config")

        self._source = source
        self._manifest = manifest.model_copy(deep=True)
        self._config = config.model_copy(deep=True)
        self._base_consistent = history_is_consistent(config, manifest)
        if not self._base_consistent:
            logger.warning(f"Base image {target.digest} has history that does not match its layers; "
                           f"new entries will be appended as-is")
        self._state = _State.OPEN
        logger.debug(f"Opened mutator on {target.digest} ({len(manifest.layers)} layers)")

    def manifest(self) -> Manifest:
        """Copy of the working manifest."""
        self._ensure_open("manifest")
        return self._manifest.model_copy(deep=True)

    def config(self) -> ImageConfig:
        """Copy of the working config."""
        self._ensure_open("config")
        return self._config.model_copy(deep=True)

    def add(self, reader: BinaryIO, history: History, *,
            compression: Optional[LayerCompression] = None) -> Descriptor:
        """
        Add a layer on top of the working image.

        The uncompressed tar in reader is compressed into a staged blob; it
        becomes visible only on commit().

        Args:
            reader: Uncompressed layer tar stream
            history: History entry for the layer (empty_layer is forced off)
            compression: Override the mutator's default compression

        Returns:
            Descriptor the layer will have once committed
        """
        self._ensure_open("add")
        compression = LayerCompression(compression or self.compression)

        writer = self.engine.blob_writer()
        try:
            digests = write_layer_blob(reader, writer, compression, zstd_level=self.zstd_level)
        except Exception:
            writer.abort()
            raise
        self._pending.append((writer, digests.media_type))

        descriptor = Descriptor(media_type=digests.media_type, digest=digests.digest, size=digests.size)
        self._manifest.layers.append(descriptor)
        self._config.rootfs.diff_ids.append(digests.diff_id)
        self._config.history.append(history.model_copy(update={"empty_layer": False}))
        logger.info(f"Staged layer {digests.digest} (diff_id {digests.diff_id}, {digests.size} bytes)")
        return descriptor

    def set_config(self, history: History, *, config: Optional[Dict[str, Any]] = None,
                   author: Optional[str] = None, architecture: Optional[str] = None,
                   os: Optional[str] = None) -> None:
        """
        Edit image configuration without adding a layer.

        Args:
            history: History entry for the edit (empty_layer is forced on)
            config: Replacement runtime config section ("Env", "Cmd", ...)
            author: New image author
            architecture: New architecture
            os: New operating system
        """
        self._ensure_open("set_config")
        if config is not None:
            self._config.config = dict(config)
        if author is not None:
            self._config.author = author
        if architecture is not None:
            self._config.architecture = architecture
        if os is not None:
            self._config.os = os
        self._config.history.append(history.model_copy(update={"empty_layer": True}))
        logger.info("Staged config-only edit")

    def commit(self) -> DescriptorPath:
        """
        Write the new image.

        Order: staged layer blobs, config, manifest, parent indexes. On any
        failure the mutation is abandoned and the base image is untouched.

        Returns:
            Descriptor path from the (possibly rewritten) root to the new manifest

        Raises:
            OciInvalidState: If the mutator is not open or history is inconsistent
        """
        self._ensure_open("commit")
        try:
            if self._base_consistent:
                check_history(self._config, self._manifest)

            for writer, media_type in self._pending:
                writer.commit(media_type)

            config_desc = self.engine.put_blob_json(self._config, OCI_IMAGE_CONFIG)
            manifest = self._manifest.model_copy(update={
                "config": self._manifest.config.model_copy(update={
                    "media_type": OCI_IMAGE_CONFIG,
                    "digest": config_desc.digest,
                    "size": config_desc.size,
                }),
            })
            manifest_desc = self.engine.put_blob_json(manifest, OCI_IMAGE_MANIFEST)

            walk = list(self._source.walk)
            walk[-1] = walk[-1].model_copy(update={
                "digest": manifest_desc.digest,
                "size": manifest_desc.size,
            })
            for i in range(len(walk) - 2, -1, -1):
                walk[i] = self._rewrite_index(walk[i], self._source.walk[i + 1], walk[i + 1])
        except Exception:
            self._abandon()
            raise

        self._pending = []
        self._state = _State.COMMITTED
        new_path = DescriptorPath(walk=walk)
        logger.info(f"Committed image manifest {manifest_desc.digest}")
        return new_path

    def _rewrite_index(self, index_desc: Descriptor, old_child: Descriptor,
                       new_child: Descriptor) -> Descriptor:
        index = self.engine.get_blob(index_desc).data
        if not isinstance(index, Index):
            raise OciInvalidState(f"descriptor path goes through non-index {index_desc.digest}")
        manifests = [new_child if d.digest == old_child.digest else d for d in index.manifests]
        new_index = index.model_copy(update={"manifests": manifests})
        written = self.engine.put_blob_json(new_index, index_desc.media_type or OCI_IMAGE_INDEX)
        return index_desc.model_copy(update={"digest": written.digest, "size": written.size})

    def _discard_pending(self) -> None:
        for writer, _ in self._pending:
            writer.abort()
        self._pending = []

    def _abandon(self) -> None:
        self._discard_pending()
        self._state = _State.ABANDONED
        logger.warning("Mutation abandoned; base image left unchanged")

    def close(self) -> None:
        """Drop any staged blobs of an uncommitted mutation."""
        if self._state == _State.OPEN:
            self._discard_pending()
            self._state = _State.ABANDONED

    def __enter__(self) -> Mutator:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
