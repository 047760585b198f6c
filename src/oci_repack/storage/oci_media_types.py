"""
OCI media types and constants.

Single source of truth for all OCI-related media types and layout constants.
"""
from __future__ import annotations

# OCI image manifest and index (manifest list) types
OCI_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_IMAGE_CONFIG = "application/vnd.oci.image.config.v1+json"

# OCI layer types, one per supported compression
OCI_IMAGE_LAYER = "application/vnd.oci.image.layer.v1.tar"
OCI_IMAGE_LAYER_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"
OCI_IMAGE_LAYER_ZSTD = "application/vnd.oci.image.layer.v1.tar+zstd"

# Non-distributable variants are still layers as far as the store is concerned
OCI_IMAGE_LAYER_NONDIST = "application/vnd.oci.image.layer.nondistributable.v1.tar"
OCI_IMAGE_LAYER_NONDIST_GZIP = "application/vnd.oci.image.layer.nondistributable.v1.tar+gzip"
OCI_IMAGE_LAYER_NONDIST_ZSTD = "application/vnd.oci.image.layer.nondistributable.v1.tar+zstd"

OCI_GENERIC_BLOB = "application/octet-stream"

LAYER_MEDIA_TYPES = frozenset({
    OCI_IMAGE_LAYER,
    OCI_IMAGE_LAYER_GZIP,
    OCI_IMAGE_LAYER_ZSTD,
    OCI_IMAGE_LAYER_NONDIST,
    OCI_IMAGE_LAYER_NONDIST_GZIP,
    OCI_IMAGE_LAYER_NONDIST_ZSTD,
})

# Image layout
OCI_LAYOUT_FILE = "oci-layout"
OCI_LAYOUT_VERSION = "1.0.0"
BLOBS_DIR = "blobs"
REFS_DIR = "refs"
TMP_DIR = "tmp"

# Annotations
OCI_REF_NAME_ANNOTATION = "org.opencontainers.image.ref.name"
OCI_CREATED_ANNOTATION = "org.opencontainers.image.created"


__all__ = [
    "OCI_IMAGE_MANIFEST",
    "OCI_IMAGE_INDEX",
    "OCI_IMAGE_CONFIG",
    "OCI_IMAGE_LAYER",
    "OCI_IMAGE_LAYER_GZIP",
    "OCI_IMAGE_LAYER_ZSTD",
    "OCI_IMAGE_LAYER_NONDIST",
    "OCI_IMAGE_LAYER_NONDIST_GZIP",
    "OCI_IMAGE_LAYER_NONDIST_ZSTD",
    "OCI_GENERIC_BLOB",
    "LAYER_MEDIA_TYPES",
    "OCI_LAYOUT_FILE",
    "OCI_LAYOUT_VERSION",
    "BLOBS_DIR",
    "REFS_DIR",
    "TMP_DIR",
    "OCI_REF_NAME_ANNOTATION",
    "OCI_CREATED_ANNOTATION",
]
