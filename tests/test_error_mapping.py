"""
Tests for error mapping and CLI utilities.

Tests exit code mapping and the run_and_exit wrapper shared by all commands.
"""
from __future__ import annotations

import pytest
import typer
from pydantic import BaseModel, ValidationError

from oci_repack.operations.mappers import EXIT_CODES, exit_code_for, run_and_exit
from oci_repack.storage.oci_errors import (
    OciAmbiguousReference,
    OciDigestMismatch,
    OciInvalidState,
    OciNotFound,
    OciStorageError,
    OciUnsupportedMediaType,
)


class _Strict(BaseModel):
    count: int


def _validation_error() -> ValidationError:
    try:
        _Strict(count="many")
    except ValidationError as e:
        return e
    raise AssertionError("expected a validation error")


class TestExitCodeMapping:
    """Test exception to exit code mapping."""

    @pytest.mark.parametrize("exc, code", [
        (OciNotFound("blob missing"), 1),
        (FileNotFoundError("no such file"), 1),
        (ValueError("bad tag"), 2),
        (OciDigestMismatch("digest mismatch", expected="sha256:aa", actual="sha256:bb"), 4),
        (OciUnsupportedMediaType("text/plain"), 5),
        (OciAmbiguousReference("multi resolves to 2 manifests"), 6),
        (OciInvalidState("closed"), 7),
    ])
    def test_known_exceptions(self, exc, code):
        assert exit_code_for(exc) == code

    def test_pydantic_validation_error(self):
        """Test that model validation failures are argument errors."""
        assert exit_code_for(_validation_error()) == 2

    def test_unknown_exception_maps_to_fallback(self):
        """Test that unexpected errors map to the storage/unknown code."""
        assert exit_code_for(RuntimeError("boom")) == 3
        assert exit_code_for(OSError("disk full")) == 3
        assert exit_code_for(KeyError("x")) == 3
        assert exit_code_for(OciStorageError("write", "sha256:aa", OSError("EIO"))) == 3

    def test_exit_code_constants(self):
        """Test that no mapped exception uses success or the fallback code."""
        assert 0 not in EXIT_CODES.values()
        assert 3 not in EXIT_CODES.values()
        assert set(EXIT_CODES.values()) == {1, 2, 4, 5, 6, 7}


class TestRunAndExit:
    """Test run_and_exit wrapper function."""

    def test_successful_function_returns_result(self):
        assert run_and_exit(lambda: "ok") == "ok"

    def test_exception_raises_typer_exit(self, capsys):
        """Test that errors become typer.Exit with the mapped code."""

        def failing():
            raise OciNotFound("tag not found: nope")

        with pytest.raises(typer.Exit) as exc_info:
            run_and_exit(failing)

        assert exc_info.value.exit_code == 1
        assert "Error: tag not found: nope" in capsys.readouterr().err

    def test_exception_chaining_preserved(self):
        """Test that the original exception stays reachable."""
        original = OciInvalidState("history mismatch")

        def failing():
            raise original

        with pytest.raises(typer.Exit) as exc_info:
            run_and_exit(failing)
        assert exc_info.value.__cause__ is original

    def test_typer_exit_passes_through(self):
        """Test that an explicit typer.Exit keeps its own code."""

        def exiting():
            raise typer.Exit(code=0)

        with pytest.raises(typer.Exit) as exc_info:
            run_and_exit(exiting)
        assert exc_info.value.exit_code == 0
        assert exc_info.value.__cause__ is None
