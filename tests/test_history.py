"""Tests for history entry helpers."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from oci_repack.history import (
    check_history,
    format_created,
    history_is_consistent,
    make_history,
    non_empty_count,
    parse_created,
)
from oci_repack.models import Descriptor, History, ImageConfig, Manifest, RootFS
from oci_repack.storage.digest import compute_digest
from oci_repack.storage.oci_errors import OciInvalidState
from oci_repack.storage.oci_media_types import OCI_IMAGE_CONFIG, OCI_IMAGE_LAYER_GZIP


def _desc(data: bytes, media_type: str = OCI_IMAGE_LAYER_GZIP) -> Descriptor:
    return Descriptor(media_type=media_type, digest=compute_digest(data), size=len(data))


def _image(n_layers: int, history):
    manifest = Manifest(config=_desc(b"cfg", OCI_IMAGE_CONFIG),
                        layers=[_desc(bytes([i])) for i in range(n_layers)])
    config = ImageConfig(rootfs=RootFS(diff_ids=[compute_digest(bytes([i])) for i in range(n_layers)]),
                         history=history)
    return config, manifest


class TestMakeHistory:
    """History entry construction."""

    def test_defaults(self):
        """Test that created defaults to now in UTC."""
        before = datetime.now(timezone.utc)
        entry = make_history("oci-repack repack")
        assert entry.created_by == "oci-repack repack"
        assert entry.empty_layer is False
        assert entry.author is None
        assert entry.created.endswith("Z")
        assert before <= parse_created(entry.created) <= datetime.now(timezone.utc)

    def test_all_fields(self):
        """Test passing every field explicitly."""
        when = datetime(2020, 2, 2, tzinfo=timezone.utc)
        entry = make_history("cmd", author="a", comment="c", created=when, empty_layer=True)
        assert (entry.author, entry.comment, entry.empty_layer) == ("a", "c", True)
        assert entry.created == "2020-02-02T00:00:00Z"


class TestParseCreated:
    """ISO8601 parsing for --history.created."""

    def test_zulu(self):
        assert parse_created("2024-01-02T03:04:05Z") == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    def test_offset(self):
        """Test that explicit offsets are kept."""
        parsed = parse_created("2024-01-02T03:04:05+02:00")
        assert parsed.utcoffset() == timedelta(hours=2)

    def test_naive_is_utc(self):
        assert parse_created("2024-01-02T03:04:05").tzinfo == timezone.utc

    def test_invalid(self):
        with pytest.raises(ValueError, match="invalid ISO8601 timestamp"):
            parse_created("yesterday")


class TestConsistency:
    """diff_ids / layers / non-empty history agreement."""

    def test_consistent(self):
        config, manifest = _image(2, [History(), History(empty_layer=True), History()])
        assert non_empty_count(config.history) == 2
        assert history_is_consistent(config, manifest)
        check_history(config, manifest)

    def test_missing_history(self):
        """Test that a layer without history is reported."""
        config, manifest = _image(2, [History()])
        assert not history_is_consistent(config, manifest)
        with pytest.raises(OciInvalidState, match="1 non-empty history entries"):
            check_history(config, manifest)

    def test_diff_id_mismatch(self):
        """Test that diff_ids out of step with layers are reported."""
        config, manifest = _image(1, [History()])
        config.rootfs.diff_ids.append(compute_digest(b"extra"))
        with pytest.raises(OciInvalidState, match="2 diff_ids, 1 layers"):
            check_history(config, manifest)


class TestFormatCreated:
    """RFC 3339 rendering of new history timestamps."""

    def test_utc_uses_z(self):
        assert format_created(datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)) == "2024-01-02T03:04:05Z"

    def test_offset_converted_to_utc(self):
        """Test that timestamps with an offset are normalized to UTC."""
        assert format_created(parse_created("2024-01-02T03:04:05+02:00")) == "2024-01-02T01:04:05Z"

    def test_fraction_kept(self):
        assert format_created(datetime(2024, 1, 2, 3, 4, 5, 120000, tzinfo=timezone.utc)) == \
            "2024-01-02T03:04:05.120000Z"
