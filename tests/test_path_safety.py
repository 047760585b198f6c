"""
Tests for path safety validation.

Tests the shared path_safety module used for archive entry names and
reference names.
"""
from __future__ import annotations

import pytest

from oci_repack.path_safety import normalize_relpath, safe_relpath, validate_reference_name


class TestSafeRelpath:
    """Test safe_relpath function directly."""

    def test_safe_paths_allowed(self):
        """Test that safe relative paths are allowed."""
        assert safe_relpath("file.txt") == "file.txt"
        assert safe_relpath("etc/passwd") == "etc/passwd"
        assert safe_relpath("usr/lib/x86_64-linux-gnu/libc.so.6") == "usr/lib/x86_64-linux-gnu/libc.so.6"

    def test_leading_dot_slash_stripped(self):
        """Test that tar-style ./ prefixes are removed."""
        assert safe_relpath("./etc/passwd") == "etc/passwd"
        assert safe_relpath("././bin") == "bin"

    def test_trailing_slash_removed(self):
        assert safe_relpath("usr/bin/") == "usr/bin"

    def test_whiteout_names_allowed(self):
        """Test that whiteout entries are ordinary safe names."""
        assert safe_relpath("etc/.wh.passwd") == "etc/.wh.passwd"
        assert safe_relpath("var/.wh..wh..opq") == "var/.wh..wh..opq"

    def test_absolute_paths_rejected(self):
        """Test that absolute paths are rejected."""
        with pytest.raises(ValueError, match="unsafe path: /etc/passwd"):
            safe_relpath("/etc/passwd")

    def test_parent_directory_traversal_rejected(self):
        """Test that parent directory traversal is rejected."""
        with pytest.raises(ValueError, match="unsafe path: ../evil.txt"):
            safe_relpath("../evil.txt")

        with pytest.raises(ValueError, match="unsafe path: dir/../../evil.txt"):
            safe_relpath("dir/../../evil.txt")

    @pytest.mark.parametrize("path", ["", ".", "./"])
    def test_root_rejected(self, path):
        """Test that the rootfs itself is not a valid entry path."""
        with pytest.raises(ValueError):
            safe_relpath(path)

    def test_backslash_rejected(self):
        with pytest.raises(ValueError, match="unsafe path"):
            safe_relpath("dir\\file")

    def test_backslash_allowed_as_name_character(self):
        """Test that a backslash can be accepted as part of a file name."""
        assert safe_relpath("dir\\file", allow_backslash=True) == "dir\\file"
        with pytest.raises(ValueError, match="unsafe path"):
            safe_relpath("..\\x/../../evil", allow_backslash=True)

    def test_nul_rejected(self):
        with pytest.raises(ValueError, match="NUL"):
            safe_relpath("bad\x00name")


class TestNormalizeRelpath:
    """Host path normalization."""

    def test_backslashes_converted(self):
        assert normalize_relpath("dir\\sub\\file") == "dir/sub/file"

    def test_nfc(self):
        """Test that decomposed unicode is composed."""
        assert normalize_relpath("cafe\u0301") == "caf\u00e9"


class TestReferenceNames:
    """Tag name validation."""

    @pytest.mark.parametrize("name", ["latest", "v1.2.3", "my_tag", "release-2024", "A" * 128])
    def test_valid(self, name):
        assert validate_reference_name(name) == name

    @pytest.mark.parametrize("name", ["", "a/b", "..", ".hidden", "-x", "x" * 129, "tag:1", "sp ace"])
    def test_invalid(self, name):
        with pytest.raises(ValueError, match="invalid reference name"):
            validate_reference_name(name)
