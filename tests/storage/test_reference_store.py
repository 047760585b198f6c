"""Tests for the directory reference store."""
from __future__ import annotations

import pytest

from oci_repack.models import Descriptor
from oci_repack.storage.digest import compute_digest
from oci_repack.storage.oci_errors import OciNotFound, OciStorageError
from oci_repack.storage.oci_media_types import OCI_IMAGE_INDEX, OCI_IMAGE_MANIFEST
from oci_repack.storage.reference_store import DirReferenceStore


@pytest.fixture
def refs(tmp_path):
    return DirReferenceStore(tmp_path, fsync=False)


def _descriptor(data: bytes, media_type: str = OCI_IMAGE_MANIFEST) -> Descriptor:
    return Descriptor(media_type=media_type, digest=compute_digest(data), size=len(data))


class TestReferenceStore:
    """Named pointers to descriptors."""

    def test_put_and_get(self, refs):
        """Test storing and retrieving a reference."""
        desc = _descriptor(b"manifest")
        refs.put("latest", desc)
        assert refs.get("latest") == desc

    def test_put_replaces(self, refs):
        """Test that put overwrites an existing reference."""
        refs.put("latest", _descriptor(b"v1"))
        refs.put("latest", _descriptor(b"v2", OCI_IMAGE_INDEX))
        got = refs.get("latest")
        assert got.digest == compute_digest(b"v2")
        assert got.media_type == OCI_IMAGE_INDEX

    def test_annotations_round_trip(self, refs):
        """Test that descriptor annotations survive storage."""
        desc = Descriptor(
            media_type=OCI_IMAGE_MANIFEST,
            digest=compute_digest(b"m"),
            size=1,
            annotations={"org.opencontainers.image.ref.name": "latest"},
        )
        refs.put("latest", desc)
        assert refs.get("latest").annotations == desc.annotations

    def test_get_missing(self, refs):
        """Test that a missing reference raises OciNotFound."""
        with pytest.raises(OciNotFound, match="reference not found: nope"):
            refs.get("nope")

    def test_get_corrupt(self, refs, tmp_path):
        """Test that an unparsable reference file is a storage error."""
        (tmp_path / "refs").mkdir()
        (tmp_path / "refs" / "broken").write_text("{not json")
        with pytest.raises(OciStorageError):
            refs.get("broken")

    def test_delete(self, refs):
        """Test deleting a reference, twice."""
        refs.put("temp", _descriptor(b"x"))
        refs.delete("temp")
        refs.delete("temp")
        with pytest.raises(OciNotFound):
            refs.get("temp")

    def test_list(self, refs, tmp_path):
        """Test listing ignores in-flight temporaries."""
        refs.put("a", _descriptor(b"a"))
        refs.put("b", _descriptor(b"b"))
        (tmp_path / "refs" / ".c.123.tmp").write_text("partial")
        assert refs.list() == {"a", "b"}

    @pytest.mark.parametrize("name", ["", "../escape", "a/b", ".hidden", "-dash", "x" * 129])
    def test_invalid_names(self, refs, name):
        """Test that names which are not a single safe file name are rejected."""
        with pytest.raises(ValueError):
            refs.put(name, _descriptor(b"x"))
