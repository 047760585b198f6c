"""
CLI smoke tests.

Tests command wiring end to end through the Typer app against a real image
layout on disk. Validates exit codes and the key lines of each command's
output.
"""
from __future__ import annotations

import json

from typer.testing import CliRunner

from oci_repack.cli import app
from oci_repack.operations import Operations, OpsConfig
from oci_repack.operations.facade import BUNDLE_META_FILE


class TestCLISmokeTests:
    """Smoke tests for CLI commands."""

    def setup_method(self):
        """Set up test environment."""
        self.runner = CliRunner()

    def test_help(self):
        result = self.runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("init", "new", "unpack", "repack", "insert", "config", "stat", "tag"):
            assert command in result.output

    def test_init_and_new(self, tmp_path):
        """Test creating a layout and an empty image in it."""
        layout = tmp_path / "image"
        result = self.runner.invoke(app, ["init", "--layout", str(layout)])
        assert result.exit_code == 0
        assert "Created image layout at" in result.output
        assert (layout / "oci-layout").is_file()

        result = self.runner.invoke(app, ["new", "--image", f"{layout}:empty"])
        assert result.exit_code == 0
        assert "Tag: empty" in result.output

        result = self.runner.invoke(app, ["tag", "list", "--layout", str(layout)])
        assert result.exit_code == 0
        assert result.output.split() == ["empty"]

    def test_unpack_edit_repack(self, base_layout, tmp_path):
        """Test the full unpack, edit, repack cycle."""
        bundle = tmp_path / "bundle"
        result = self.runner.invoke(app, ["unpack", str(bundle), "--image", f"{base_layout}:latest"])
        assert result.exit_code == 0
        assert "Layers applied: 1" in result.output
        assert (bundle / BUNDLE_META_FILE).is_file()

        (bundle / "rootfs" / "etc" / "hostname").write_text("cli\n")
        result = self.runner.invoke(app, [
            "repack", str(bundle), "--image", f"{base_layout}:edited",
            "--history.comment", "from cli", "--history.created", "2024-03-04T05:06:07Z",
            "--verbose",
        ])
        assert result.exit_code == 0, result.output
        assert "Tag: edited" in result.output
        assert "M /etc/hostname" in result.output

        result = self.runner.invoke(app, ["stat", "--image", f"{base_layout}:edited"])
        assert result.exit_code == 0
        assert "History" in result.output
        assert "Layers: 2" in result.output

    def test_repack_without_refresh(self, base_layout, tmp_path):
        bundle = tmp_path / "bundle"
        self.runner.invoke(app, ["unpack", str(bundle), "--image", str(base_layout)])
        before = json.loads((bundle / BUNDLE_META_FILE).read_text())

        (bundle / "rootfs" / "added").write_text("x")
        result = self.runner.invoke(app, ["repack", str(bundle), "--image", str(base_layout),
                                          "--no-refresh-bundle"])
        assert result.exit_code == 0
        assert json.loads((bundle / BUNDLE_META_FILE).read_text()) == before

    def test_insert(self, base_layout, tmp_path):
        source = tmp_path / "motd"
        source.write_text("hello\n")
        result = self.runner.invoke(app, ["insert", str(source), "/etc/motd",
                                          "--image", str(base_layout), "--tag", "with-motd"])
        assert result.exit_code == 0
        assert "Tag: with-motd" in result.output

    def test_config(self, base_layout, settings):
        """Test config edits with repeated options."""
        result = self.runner.invoke(app, [
            "config", "--image", str(base_layout),
            "--config.env", "A=1", "--config.env", "B=2",
            "--config.cmd", "/bin/sh", "--config.cmd", "-c",
            "--config.label", "team=infra",
            "--history.created_by", "manual edit",
        ])
        assert result.exit_code == 0, result.output

        stat = Operations(OpsConfig(), settings).stat(base_layout, None)
        assert stat.config.config["Env"][-2:] == ["A=1", "B=2"]
        assert stat.config.config["Cmd"] == ["/bin/sh", "-c"]
        assert stat.config.config["Labels"] == {"team": "infra"}
        assert stat.config.history[-1].created_by == "manual edit"

    def test_config_without_edits(self, base_layout):
        result = self.runner.invoke(app, ["config", "--image", str(base_layout)])
        assert result.exit_code == 2
        assert "no configuration changes" in result.output

    def test_tag_add_and_rm(self, base_layout):
        result = self.runner.invoke(app, ["tag", "add", "stable", "--image", f"{base_layout}:latest"])
        assert result.exit_code == 0
        assert "Tagged stable" in result.output

        result = self.runner.invoke(app, ["tag", "rm", "--image", f"{base_layout}:latest"])
        assert result.exit_code == 0
        assert "Removed tag latest" in result.output

        result = self.runner.invoke(app, ["tag", "list", "--layout", str(base_layout)])
        assert result.output.split() == ["stable"]

    def test_tag_rm_needs_tag(self, base_layout):
        result = self.runner.invoke(app, ["tag", "rm", "--image", str(base_layout)])
        assert result.exit_code == 2
        assert "explicit tag" in result.output


class TestCLIErrors:
    """Exit codes surfaced through the CLI."""

    def setup_method(self):
        self.runner = CliRunner()

    def test_missing_tag(self, base_layout, tmp_path):
        result = self.runner.invoke(app, ["unpack", str(tmp_path / "b"), "--image", f"{base_layout}:nope"])
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_missing_layout(self, tmp_path):
        result = self.runner.invoke(app, ["stat", "--image", str(tmp_path / "nowhere")])
        assert result.exit_code == 1

    def test_repack_non_bundle(self, base_layout, tmp_path):
        result = self.runner.invoke(app, ["repack", str(tmp_path), "--image", str(base_layout)])
        assert result.exit_code == 2
        assert "not an unpacked bundle" in result.output

    def test_invalid_history_timestamp(self, base_layout, tmp_path):
        bundle = tmp_path / "bundle"
        self.runner.invoke(app, ["unpack", str(bundle), "--image", str(base_layout)])
        result = self.runner.invoke(app, ["repack", str(bundle), "--image", str(base_layout),
                                          "--history.created", "someday"])
        assert result.exit_code == 2
        assert "invalid ISO8601 timestamp" in result.output

    def test_invalid_log_level(self):
        result = self.runner.invoke(app, ["--log-level", "loud", "tag", "list", "--layout", "."])
        assert result.exit_code != 0
