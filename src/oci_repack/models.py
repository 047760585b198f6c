"""
Data models for OCI images, unpacked bundles and filesystem changesets.

These Pydantic models mirror the OCI image-spec JSON documents (using the
spec's field names as aliases) and the transient records used by the
repack pipeline, from filesystem snapshots to descriptor paths.
"""
from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .storage.digest import parse_digest
from .storage.oci_media_types import OCI_IMAGE_INDEX, OCI_IMAGE_MANIFEST


def canonical_json(model: BaseModel) -> bytes:
    """
    Serialize a model to canonical JSON bytes.

    Digests are computed over these exact bytes, so the encoding must be
    stable: aliases, no None values, sorted keys, compact separators.
    """
    data = model.model_dump(mode="json", by_alias=True, exclude_none=True)
    return json.dumps(
        data,
        sort_keys=True,
        separators=(',', ':'),
        ensure_ascii=True
    ).encode("utf-8")


class Descriptor(BaseModel):
    """Typed pointer to a blob."""
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="allow")

    media_type: str = Field(..., alias="mediaType", description="Media type of the referenced blob")
    digest: str = Field(..., description="Content digest (sha256:...)")
    size: int = Field(..., ge=0, description="Blob size in bytes")
    urls: Optional[List[str]] = Field(default=None, description="Alternate download locations")
    annotations: Optional[Dict[str, str]] = Field(default=None, description="Arbitrary metadata")
    platform: Optional[Dict[str, Any]] = Field(default=None, description="Platform (index entries only)")

    @field_validator("digest")
    @classmethod
    def validate_digest(cls, v: str) -> str:
        parse_digest(v)
        return v


class Manifest(BaseModel):
    """OCI image manifest: one config plus ordered layers (bottom to top)."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: Optional[str] = Field(default=OCI_IMAGE_MANIFEST, alias="mediaType")
    config: Descriptor
    layers: List[Descriptor] = Field(default_factory=list)
    annotations: Optional[Dict[str, str]] = None


class Index(BaseModel):
    """OCI image index (manifest list)."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: Optional[str] = Field(default=OCI_IMAGE_INDEX, alias="mediaType")
    manifests: List[Descriptor] = Field(default_factory=list)
    annotations: Optional[Dict[str, str]] = None


class History(BaseModel):
    """Provenance record for one layer (or one config-only edit)."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    created: Optional[str] = Field(default=None, description="RFC 3339 timestamp, kept as written")
    created_by: Optional[str] = None
    author: Optional[str] = None
    comment: Optional[str] = None
    empty_layer: bool = False


class RootFS(BaseModel):
    """Uncompressed layer digests, in manifest layer order."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str = "layers"
    diff_ids: List[str] = Field(default_factory=list)


class ImageConfig(BaseModel):
    """
    OCI image configuration.

    Only rootfs and history are interpreted; every other field (including
    unknown ones) is carried through unchanged.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    created: Optional[str] = Field(default=None, description="RFC 3339 timestamp, kept as written")
    author: Optional[str] = None
    architecture: Optional[str] = None
    os: Optional[str] = None
    config: Optional[Dict[str, Any]] = Field(default=None, description="Runtime execution parameters")
    rootfs: RootFS = Field(default_factory=RootFS)
    history: List[History] = Field(default_factory=list)


class DescriptorPath(BaseModel):
    """
    Chain of descriptors from a root descriptor down to an image manifest.

    The root is what a reference points at; for a plain image it is the
    manifest itself and the walk has a single element.
    """
    model_config = ConfigDict(frozen=True)

    walk: List[Descriptor] = Field(..., min_length=1)

    def root(self) -> Descriptor:
        return self.walk[0]

    def descriptor(self) -> Descriptor:
        return self.walk[-1]


class EntryType(str, Enum):
    """Filesystem node types tracked by snapshots."""
    FILE = "file"
    DIR = "dir"
    SYMLINK = "symlink"
    OTHER = "other"


class EntryMeta(BaseModel):
    """Metadata captured for a single path in a rootfs snapshot."""
    type: EntryType
    mode: Optional[int] = None
    uid: Optional[int] = None
    gid: Optional[int] = None
    size: Optional[int] = None
    mtime: Optional[int] = Field(default=None, description="Modification time in nanoseconds")
    link_target: Optional[str] = None
    sha256: Optional[str] = None


class Snapshot(BaseModel):
    """Path -> metadata map of a rootfs, captured at unpack time."""
    keywords: List[str]
    entries: Dict[str, EntryMeta] = Field(default_factory=dict)


class ChangeKind(str, Enum):
    """Classification of a single path difference."""
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    TYPE_CHANGED = "type_changed"


class Change(BaseModel):
    """One changeset record."""
    path: str
    kind: ChangeKind
    before: Optional[EntryMeta] = None
    after: Optional[EntryMeta] = None


class BundleMeta(BaseModel):
    """Bookkeeping written next to an unpacked rootfs."""
    model_config = ConfigDict(populate_by_name=True)

    version: str = "1"
    from_path: DescriptorPath = Field(..., alias="from", description="Image the bundle was unpacked from")
    snapshot: str = Field(..., description="Snapshot file name inside the bundle")


__all__ = [
    "canonical_json",
    "Descriptor",
    "Manifest",
    "Index",
    "History",
    "RootFS",
    "ImageConfig",
    "DescriptorPath",
    "EntryType",
    "EntryMeta",
    "Snapshot",
    "ChangeKind",
    "Change",
    "BundleMeta",
]
