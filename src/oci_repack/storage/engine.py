"""
CAS engine over an OCI image layout.

Composes the blob store and the reference store behind one handle and adds
typed marshaling: structured blobs are written as canonical JSON and read
back as models chosen by descriptor media type. References are resolved to
descriptor paths that end at image manifests.

The engine handle has an explicit lifecycle: open it at the start of a
command and close it on every exit path, usually with a ``with`` block.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, List, Optional, Set, Union

from pydantic import BaseModel, ValidationError

from .base import BlobStore, ReferenceStore
from .blob_store import BlobWriter, DirBlobStore
from .oci_errors import (
    OciError,
    OciInvalidState,
    OciNotFound,
    OciStorageError,
    OciUnsupportedMediaType,
)
from .oci_media_types import (
    BLOBS_DIR,
    LAYER_MEDIA_TYPES,
    OCI_IMAGE_CONFIG,
    OCI_IMAGE_INDEX,
    OCI_IMAGE_MANIFEST,
    OCI_LAYOUT_FILE,
    OCI_LAYOUT_VERSION,
    REFS_DIR,
    TMP_DIR,
)
from .reference_store import DirReferenceStore
from ..models import Descriptor, DescriptorPath, ImageConfig, Index, Manifest, canonical_json
from ..settings import Settings

logger = logging.getLogger(__name__)

__all__ = ["CasEngine", "Blob", "create_layout"]

# Structured media types and the model each one decodes into
_JSON_DECODERS = {
    OCI_IMAGE_MANIFEST: Manifest,
    OCI_IMAGE_CONFIG: ImageConfig,
    OCI_IMAGE_INDEX: Index,
}


@dataclass
class Blob:
    """
    A blob decoded according to its descriptor.

    ``data`` is a Manifest, ImageConfig or Index for structured blobs and a
    verifying byte stream for layers. Layer streams must be closed, either
    through close() or by using the Blob as a context manager.
    """
    descriptor: Descriptor
    data: Union[Manifest, ImageConfig, Index, BinaryIO]

    @property
    def media_type(self) -> str:
        return self.descriptor.media_type

    def close(self) -> None:
        if not isinstance(self.data, BaseModel):
            self.data.close()

    def __enter__(self) -> Blob:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def create_layout(root: Union[str, Path], settings: Optional[Settings] = None) -> Path:
    """
    Create an empty image layout.

    Args:
        root: Directory to create (may exist if empty)
        settings: Settings selecting the digest algorithm

    Returns:
        Path of the new layout

    Raises:
        ValueError: If root exists and is not an empty directory
        OciStorageError: If the directories cannot be created
    """
    settings = settings or Settings()
    root = Path(root)
    if root.exists() and (not root.is_dir() or any(root.iterdir())):
        raise ValueError(f"image layout path must not exist or be empty: {root}")
    try:
        (root / BLOBS_DIR / settings.digest_algorithm).mkdir(parents=True, exist_ok=True)
        (root / REFS_DIR).mkdir(exist_ok=True)
        (root / TMP_DIR).mkdir(exist_ok=True)
        (root / OCI_LAYOUT_FILE).write_text(
            json.dumps({"imageLayoutVersion": OCI_LAYOUT_VERSION}), encoding="utf-8"
        )
    except OSError as e:
        raise OciStorageError("create_layout", str(root), e) from e
    logger.info(f"Created image layout at {root}")
    return root


class CasEngine:
    """
    Blob + reference storage for one image layout.

    All persistent identity is the digest: objects are looked up through
    descriptors every time rather than cached as in-memory pointers.
    """

    def __init__(self, root: Union[str, Path], blobs: BlobStore, refs: ReferenceStore):
        self.root = Path(root)
        self.blobs = blobs
        self.refs = refs
        self._closed = False

    @classmethod
    def open(cls, root: Union[str, Path], settings: Optional[Settings] = None) -> CasEngine:
        """
        Open an existing image layout.

        Raises:
            OciNotFound: If root has no oci-layout file
            OciError: If the layout version is not supported
        """
        settings = settings or Settings()
        root = Path(root)
        layout_file = root / OCI_LAYOUT_FILE
        try:
            layout = json.loads(layout_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise OciNotFound(f"not an image layout (missing {OCI_LAYOUT_FILE}): {root}") from None
        except (OSError, json.JSONDecodeError) as e:
            raise OciStorageError("open_layout", str(root), e) from e

        version = layout.get("imageLayoutVersion") if isinstance(layout, dict) else None
        if version != OCI_LAYOUT_VERSION:
            raise OciError(f"unsupported image layout version {version!r} in {root}")

        logger.debug(f"Opened image layout {root}")
        return cls(
            root,
            DirBlobStore(root, algorithm=settings.digest_algorithm, fsync=settings.fsync),
            DirReferenceStore(root, fsync=settings.fsync),
        )

    def _ensure_open(self) -> None:
        if self._closed:
            raise OciInvalidState(f"engine for {self.root} is closed")

    # Blobs

    def put_blob(self, data: Union[bytes, BinaryIO], media_type: str) -> Descriptor:
        self._ensure_open()
        return self.blobs.put(data, media_type)

    def put_blob_json(self, model: BaseModel, media_type: str) -> Descriptor:
        """Serialize a model canonically and store it."""
        self._ensure_open()
        return self.blobs.put(canonical_json(model), media_type)

    def blob_writer(self) -> BlobWriter:
        self._ensure_open()
        return self.blobs.writer()

    def get_blob(self, descriptor: Descriptor) -> Blob:
        """
        Fetch a blob and decode it according to its media type.

        Args:
            descriptor: Descriptor of the blob to fetch

        Returns:
            Blob wrapping a model (manifest/config/index) or a layer stream

        Raises:
            OciUnsupportedMediaType: If the media type is not recognized
            OciNotFound: If the blob does not exist
            OciDigestMismatch: If the content does not match the descriptor
        """
        self._ensure_open()
        media_type = descriptor.media_type

        model_cls = _JSON_DECODERS.get(media_type)
        if model_cls is not None:
            raw = self.blobs.read(descriptor.digest, expected_size=descriptor.size)
            try:
                data = model_cls.model_validate_json(raw)
            except ValidationError as e:
                raise OciStorageError(f"decode {media_type}", descriptor.digest, e) from e
            return Blob(descriptor=descriptor, data=data)

        if media_type in LAYER_MEDIA_TYPES:
            stream = self.blobs.open(descriptor.digest, expected_size=descriptor.size)
            return Blob(descriptor=descriptor, data=stream)

        raise OciUnsupportedMediaType(
            f"unsupported media type {media_type!r} for blob {descriptor.digest}"
        )

    def delete_blob(self, digest: str) -> None:
        self._ensure_open()
        self.blobs.delete(digest)

    def list_blobs(self) -> Set[str]:
        self._ensure_open()
        return self.blobs.list()

    # References

    def get_reference(self, name: str) -> Descriptor:
        self._ensure_open()
        return self.refs.get(name)

    def update_reference(self, name: str, descriptor: Descriptor) -> None:
        """Point name at descriptor, replacing any previous target."""
        self._ensure_open()
        self.refs.put(name, descriptor)
        logger.info(f"Updated reference {name} -> {descriptor.digest}")

    def delete_reference(self, name: str) -> None:
        """Ensure name does not exist."""
        self._ensure_open()
        self.refs.delete(name)

    def list_references(self) -> Set[str]:
        self._ensure_open()
        return self.refs.list()

    def resolve_reference(self, name: str) -> List[DescriptorPath]:
        """
        Resolve a reference to every image manifest it designates.

        Returns:
            One DescriptorPath per reachable manifest: empty if the
            reference does not exist, more than one only when it points at
            an index listing several manifests.
        """
        self._ensure_open()
        try:
            descriptor = self.refs.get(name)
        except OciNotFound:
            return []
        paths = self._walk([descriptor])
        logger.debug(f"Reference {name} resolved to {len(paths)} manifest(s)")
        return paths

    def _walk(self, walk: List[Descriptor]) -> List[DescriptorPath]:
        current = walk[-1]
        if current.media_type == OCI_IMAGE_MANIFEST:
            return [DescriptorPath(walk=list(walk))]
        if current.media_type == OCI_IMAGE_INDEX:
            index = self.get_blob(current).data
            paths: List[DescriptorPath] = []
            for child in index.manifests:
                paths.extend(self._walk(walk + [child]))
            return paths
        logger.debug(f"Skipping {current.media_type} descriptor {current.digest} during resolution")
        return []

    # Lifecycle

    def close(self) -> None:
        """Release the engine. Safe to call more than once."""
        if not self._closed:
            self._closed = True
            logger.debug(f"Closed image layout {self.root}")

    def __enter__(self) -> CasEngine:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
