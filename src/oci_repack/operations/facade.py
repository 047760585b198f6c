"""
Operations Facade - Application service layer.

Provides a clean interface between the CLI and the storage, layer and
mutation APIs, centralizing command orchestration and policy decisions while
keeping CLI commands thin and testable.
"""
from __future__ import annotations

import logging
import platform
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..history import format_created, make_history
from ..layer.changeset import capture_snapshot, compute_changeset, load_snapshot, write_snapshot
from ..layer.packager import LayerCompression, generate_insert_layer, generate_layer
from ..layer.unpack import apply_layer, compression_for_media_type
from ..models import BundleMeta, Change, DescriptorPath, History, ImageConfig, Manifest
from ..mutate import Mutator, resolve_single
from ..path_safety import validate_reference_name
from ..settings import Settings, create_settings_from_env
from ..storage.digest import parse_digest
from ..storage.engine import CasEngine, create_layout
from ..storage.oci_errors import OciInvalidState
from ..storage.oci_media_types import OCI_IMAGE_CONFIG, OCI_IMAGE_MANIFEST

logger = logging.getLogger(__name__)

ROOTFS_DIR = "rootfs"
BUNDLE_META_FILE = "oci-repack.json"
SNAPSHOT_SUFFIX = ".mtree.json"

_ARCHITECTURES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
}


@dataclass(frozen=True)
class OpsConfig:
    """
    Configuration for Operations facade.

    Centralizes output policy so commands do not carry scattered flags.
    """
    human: bool = True            # Human text output
    verbose: bool = False         # Show detailed output


@dataclass(frozen=True)
class HistoryOptions:
    """User overrides for the history entry a mutating command records."""
    author: Optional[str] = None
    comment: Optional[str] = None
    created: Optional[datetime] = None
    created_by: Optional[str] = None


@dataclass(frozen=True)
class ConfigEdits:
    """
    Edits to an image configuration.

    env entries are "KEY=value" and replace an existing entry with the same
    key; labels are "key=value" and are merged into existing labels. List
    values (cmd, entrypoint) replace the current value when given.
    """
    env: List[str] = field(default_factory=list)
    labels: List[str] = field(default_factory=list)
    cmd: Optional[List[str]] = None
    entrypoint: Optional[List[str]] = None
    working_dir: Optional[str] = None
    user: Optional[str] = None
    author: Optional[str] = None
    architecture: Optional[str] = None
    os: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.env or self.labels) and all(
            v is None for v in (self.cmd, self.entrypoint, self.working_dir, self.user,
                                self.author, self.architecture, self.os)
        )


@dataclass(frozen=True)
class UnpackResult:
    """Where an image was unpacked and which manifest it came from."""
    bundle: Path
    rootfs: Path
    source: DescriptorPath
    layers: int


@dataclass(frozen=True)
class CommitResult:
    """Outcome of a mutating command."""
    tag: str
    path: DescriptorPath
    changes: List[Change] = field(default_factory=list)


@dataclass(frozen=True)
class ImageStat:
    """Manifest and config of a resolved image."""
    tag: str
    path: DescriptorPath
    manifest: Manifest
    config: ImageConfig


def _split_kv(item: str, what: str) -> tuple[str, str]:
    key, sep, value = item.partition("=")
    if not sep or not key:
        raise ValueError(f"{what} must be KEY=VALUE, got {item!r}")
    return key, value


def apply_config_edits(current: Optional[Dict[str, Any]], edits: ConfigEdits) -> Dict[str, Any]:
    """
    Apply runtime config edits to a copy of the config section.

    Args:
        current: Existing "config" section of an image config (may be None)
        edits: Requested edits

    Returns:
        New config section

    Raises:
        ValueError: If an env or label entry is malformed
    """
    config = dict(current or {})

    if edits.env:
        env = list(config.get("Env") or [])
        for item in edits.env:
            key, _ = _split_kv(item, "env entry")
            env = [e for e in env if e.partition("=")[0] != key]
            env.append(item)
        config["Env"] = env

    if edits.labels:
        labels = dict(config.get("Labels") or {})
        for item in edits.labels:
            key, value = _split_kv(item, "label")
            labels[key] = value
        config["Labels"] = labels

    if edits.cmd is not None:
        config["Cmd"] = list(edits.cmd)
    if edits.entrypoint is not None:
        config["Entrypoint"] = list(edits.entrypoint)
    if edits.working_dir is not None:
        config["WorkingDir"] = edits.working_dir
    if edits.user is not None:
        config["User"] = edits.user
    return config


def _default_platform() -> tuple[str, str]:
    machine = platform.machine().lower()
    system = platform.system().lower() or "linux"
    return _ARCHITECTURES.get(machine, machine or "amd64"), system


def snapshot_file_name(digest: str) -> str:
    """Bundle file name of the snapshot for the manifest with this digest."""
    algorithm, encoded = parse_digest(digest)
    return f"{algorithm}_{encoded}{SNAPSHOT_SUFFIX}"


def read_bundle_meta(bundle: Union[str, Path]) -> BundleMeta:
    """
    Load the bookkeeping file of an unpacked bundle.

    Raises:
        ValueError: If the path is not a bundle created by unpack
    """
    meta_path = Path(bundle) / BUNDLE_META_FILE
    if not meta_path.is_file():
        raise ValueError(f"not an unpacked bundle (missing {BUNDLE_META_FILE}): {bundle}")
    return BundleMeta.model_validate_json(meta_path.read_bytes())


def write_bundle_meta(bundle: Union[str, Path], meta: BundleMeta) -> None:
    meta_path = Path(bundle) / BUNDLE_META_FILE
    meta_path.write_text(meta.model_dump_json(by_alias=True, exclude_none=True), encoding="utf-8")


class Operations:
    """
    Application service facade for CLI operations.

    One method per CLI verb. Each method opens the image layout, does its
    work and closes the layout again on every exit path; exceptions bubble
    up unchanged for central exit code mapping.
    """

    def __init__(self, config: OpsConfig, settings: Optional[Settings] = None):
        """
        Initialize Operations facade.

        Args:
            config: Output configuration
            settings: Optional settings (if None, loaded from environment)
        """
        self.cfg = config
        if settings is None:
            settings = create_settings_from_env()
        self.settings = settings

    def _open(self, layout: Union[str, Path]) -> CasEngine:
        return CasEngine.open(layout, self.settings)

    def _mutator(self, engine: CasEngine) -> Mutator:
        return Mutator(
            engine,
            compression=LayerCompression(self.settings.compression),
            zstd_level=self.settings.zstd_level,
        )

    def _tag(self, tag: Optional[str]) -> str:
        return validate_reference_name(tag or self.settings.default_tag)

    @staticmethod
    def _history(default_created_by: str, opts: Optional[HistoryOptions]) -> History:
        opts = opts or HistoryOptions()
        return make_history(
            opts.created_by or default_created_by,
            author=opts.author,
            comment=opts.comment,
            created=opts.created,
        )

    def init(self, layout: Union[str, Path]) -> Path:
        """Create a new, empty image layout."""
        return create_layout(layout, self.settings)

    def new(self, layout: Union[str, Path], tag: Optional[str] = None) -> CommitResult:
        """
        Create an image with no layers and tag it.

        Raises:
            ValueError: If the tag already exists
        """
        tag = self._tag(tag)
        architecture, os_name = _default_platform()
        with self._open(layout) as engine:
            if tag in engine.list_references():
                raise ValueError(f"tag already exists: {tag}")
            now = datetime.now(timezone.utc)
            config = ImageConfig(created=format_created(now), architecture=architecture, os=os_name, config={})
            config_desc = engine.put_blob_json(config, OCI_IMAGE_CONFIG)
            manifest_desc = engine.put_blob_json(Manifest(config=config_desc), OCI_IMAGE_MANIFEST)
            engine.update_reference(tag, manifest_desc)
        logger.info(f"Created empty image {manifest_desc.digest} as {tag}")
        return CommitResult(tag=tag, path=DescriptorPath(walk=[manifest_desc]))

    def unpack(self, layout: Union[str, Path], tag: Optional[str],
               bundle: Union[str, Path]) -> UnpackResult:
        """
        Extract an image into a bundle directory for editing.

        The bundle gets rootfs/ with every layer applied in order, a snapshot
        of the resulting tree and a bookkeeping file naming the source image.

        Raises:
            ValueError: If bundle exists and is not empty
            OciNotFound: If the tag does not exist
            OciAmbiguousReference: If the tag reaches several manifests
        """
        tag = self._tag(tag)
        bundle = Path(bundle)
        if bundle.exists() and (not bundle.is_dir() or any(bundle.iterdir())):
            raise ValueError(f"bundle path must not exist or be empty: {bundle}")

        with self._open(layout) as engine:
            source = resolve_single(engine, tag)
            with engine.get_blob(source.descriptor()) as blob:
                manifest = blob.data

            rootfs = bundle / ROOTFS_DIR
            rootfs.mkdir(parents=True, exist_ok=True)
            for i, layer in enumerate(manifest.layers):
                compression = compression_for_media_type(layer.media_type)
                logger.info(f"Applying layer {i + 1}/{len(manifest.layers)}: {layer.digest}")
                with engine.get_blob(layer) as blob:
                    apply_layer(blob.data, rootfs, compression)

        snapshot = capture_snapshot(rootfs, self.settings.snapshot_keywords)
        snapshot_name = snapshot_file_name(source.descriptor().digest)
        write_snapshot(snapshot, bundle / snapshot_name)
        write_bundle_meta(bundle, BundleMeta(from_path=source, snapshot=snapshot_name))
        logger.info(f"Unpacked {tag} ({source.descriptor().digest}) into {bundle}")
        return UnpackResult(bundle=bundle, rootfs=rootfs, source=source, layers=len(manifest.layers))

    def repack(self, layout: Union[str, Path], bundle: Union[str, Path], *,
               tag: Optional[str] = None, history: Optional[HistoryOptions] = None,
               refresh_bundle: bool = True) -> CommitResult:
        """
        Commit the changes made in an unpacked bundle as a new layer.

        The changeset is computed against the snapshot taken at unpack time.
        With no changes, no layer is added and the new image only gains an
        empty-layer history entry.

        Args:
            layout: Image layout the bundle was unpacked from
            bundle: Bundle directory created by unpack
            tag: Tag to point at the new image
            history: History entry overrides
            refresh_bundle: Re-snapshot the bundle so it can be repacked again

        Returns:
            CommitResult with the new descriptor path and the changeset
        """
        tag = self._tag(tag)
        bundle = Path(bundle)
        meta = read_bundle_meta(bundle)
        rootfs = bundle / ROOTFS_DIR
        snapshot = load_snapshot(bundle / meta.snapshot)
        changes = compute_changeset(snapshot, rootfs)
        entry = self._history("oci-repack repack", history)

        with self._open(layout) as engine:
            with self._mutator(engine) as mutator:
                mutator.open(meta.from_path)
                if changes:
                    with generate_layer(rootfs, changes) as layer:
                        mutator.add(layer, entry)
                else:
                    logger.info("No changes in bundle; recording an empty-layer history entry")
                    mutator.set_config(entry)
                new_path = mutator.commit()
            engine.update_reference(tag, new_path.root())

        if refresh_bundle:
            new_snapshot = snapshot_file_name(new_path.descriptor().digest)
            write_snapshot(capture_snapshot(rootfs, snapshot.keywords), bundle / new_snapshot)
            write_bundle_meta(bundle, BundleMeta(from_path=new_path, snapshot=new_snapshot))
            if new_snapshot != meta.snapshot:
                (bundle / meta.snapshot).unlink(missing_ok=True)
            logger.debug(f"Refreshed bundle {bundle} against {new_path.descriptor().digest}")

        logger.info(f"Repacked {bundle} as {tag}: {new_path.descriptor().digest}")
        return CommitResult(tag=tag, path=new_path, changes=changes)

    def insert(self, layout: Union[str, Path], tag: Optional[str],
               source: Union[str, Path], target: str, *,
               new_tag: Optional[str] = None, opaque: bool = False,
               history: Optional[HistoryOptions] = None) -> CommitResult:
        """
        Add a layer that places a host file or directory at target.

        Raises:
            FileNotFoundError: If source does not exist
            ValueError: If target is not a safe path
        """
        tag = self._tag(tag)
        dest_tag = self._tag(new_tag or tag)
        entry = self._history("oci-repack insert", history)

        with self._open(layout) as engine:
            base = resolve_single(engine, tag)
            with self._mutator(engine) as mutator:
                mutator.open(base)
                with generate_insert_layer(source, target, opaque=opaque) as layer:
                    mutator.add(layer, entry)
                new_path = mutator.commit()
            engine.update_reference(dest_tag, new_path.root())

        logger.info(f"Inserted {source} at /{target.lstrip('/')} into {dest_tag}: "
                    f"{new_path.descriptor().digest}")
        return CommitResult(tag=dest_tag, path=new_path)

    def config(self, layout: Union[str, Path], tag: Optional[str], edits: ConfigEdits, *,
               new_tag: Optional[str] = None,
               history: Optional[HistoryOptions] = None) -> CommitResult:
        """
        Edit the image configuration without adding a layer.

        Raises:
            ValueError: If no edits are given or an edit is malformed
        """
        if edits.is_empty():
            raise ValueError("no configuration changes requested")
        tag = self._tag(tag)
        dest_tag = self._tag(new_tag or tag)
        entry = self._history("oci-repack config", history)

        with self._open(layout) as engine:
            base = resolve_single(engine, tag)
            with self._mutator(engine) as mutator:
                mutator.open(base)
                current = mutator.config()
                mutator.set_config(
                    entry,
                    config=apply_config_edits(current.config, edits),
                    author=edits.author,
                    architecture=edits.architecture,
                    os=edits.os,
                )
                new_path = mutator.commit()
            engine.update_reference(dest_tag, new_path.root())

        logger.info(f"Updated config of {dest_tag}: {new_path.descriptor().digest}")
        return CommitResult(tag=dest_tag, path=new_path)

    def tag_list(self, layout: Union[str, Path]) -> List[str]:
        """List tags in sorted order."""
        with self._open(layout) as engine:
            return sorted(engine.list_references())

    def tag_add(self, layout: Union[str, Path], tag: Optional[str], new_tag: str) -> str:
        """Point new_tag at whatever tag points at."""
        tag = self._tag(tag)
        new_tag = validate_reference_name(new_tag)
        with self._open(layout) as engine:
            descriptor = engine.get_reference(tag)
            engine.update_reference(new_tag, descriptor)
        logger.info(f"Tagged {descriptor.digest} as {new_tag}")
        return new_tag

    def tag_rm(self, layout: Union[str, Path], tag: str) -> None:
        """
        Remove a tag. Blobs are left in place.

        Raises:
            OciNotFound: If the tag does not exist
        """
        tag = validate_reference_name(tag)
        with self._open(layout) as engine:
            engine.get_reference(tag)
            engine.delete_reference(tag)
        logger.info(f"Removed tag {tag}")

    def stat(self, layout: Union[str, Path], tag: Optional[str]) -> ImageStat:
        """Load manifest and config of a tagged image."""
        tag = self._tag(tag)
        with self._open(layout) as engine:
            path = resolve_single(engine, tag)
            with engine.get_blob(path.descriptor()) as blob:
                manifest = blob.data
            with engine.get_blob(manifest.config) as blob:
                config = blob.data
        if not isinstance(config, ImageConfig):
            raise OciInvalidState(f"config {manifest.config.digest} is not an image config")
        return ImageStat(tag=tag, path=path, manifest=manifest, config=config)

