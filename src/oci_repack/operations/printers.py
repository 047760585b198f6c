"""
Human-readable output formatting.

Centralizes all CLI output formatting so commands stay thin. Tables and
highlighted summaries go through rich; plain lines through typer.echo.
"""
from __future__ import annotations

import typer
from typing import List

from rich.console import Console
from rich.table import Table

from ..models import Change, ChangeKind
from .facade import CommitResult, ImageStat, UnpackResult

_console = Console()

_CHANGE_MARKS = {
    ChangeKind.ADDED: "+",
    ChangeKind.MODIFIED: "M",
    ChangeKind.DELETED: "-",
    ChangeKind.TYPE_CHANGED: "T",
}


def _format_bytes(n: int) -> str:
    size = float(n)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def _short(digest: str) -> str:
    algorithm, _, encoded = digest.partition(":")
    return f"{algorithm}:{encoded[:12]}"


def print_init_summary(layout: str) -> None:
    typer.echo(f"Created image layout at {layout}")


def print_unpack_summary(result: UnpackResult) -> None:
    """Print where an image was unpacked."""
    typer.echo(f"Unpacked {result.source.descriptor().digest}")
    typer.echo(f"Bundle: {result.bundle}")
    typer.echo(f"Layers applied: {result.layers}")


def print_changes(changes: List[Change]) -> None:
    """Print a changeset, one line per path."""
    for change in changes:
        typer.echo(f"  {_CHANGE_MARKS[change.kind]} /{change.path}")


def print_commit_summary(result: CommitResult, verbose: bool = False) -> None:
    """
    Print the new image a mutating command produced.

    Args:
        result: Outcome of the command
        verbose: Also list the changeset
    """
    _console.print(f"[bold]Tag:[/] {result.tag}")
    _console.print(f"[bold]Manifest:[/] [dim]{result.path.descriptor().digest}[/]")
    if len(result.path.walk) > 1:
        _console.print(f"[bold]Root index:[/] [dim]{result.path.root().digest}[/]")
    if result.changes:
        _console.print(f"[bold]Changes:[/] {len(result.changes)}")
        if verbose:
            print_changes(result.changes)


def print_tags(tags: List[str]) -> None:
    for tag in tags:
        typer.echo(tag)


def print_stat(stat: ImageStat, verbose: bool = False) -> None:
    """
    Print manifest identity and the history table of an image.

    Args:
        stat: Image to describe
        verbose: Include layer digests
    """
    manifest, config = stat.manifest, stat.config
    total = sum(layer.size for layer in manifest.layers)
    _console.print(f"[bold]Tag:[/] {stat.tag}")
    _console.print(f"[bold]Manifest:[/] [dim]{stat.path.descriptor().digest}[/]")
    _console.print(f"[bold]Config:[/] [dim]{manifest.config.digest}[/]")
    _console.print(f"[bold]Platform:[/] {config.os or '?'}/{config.architecture or '?'}")
    _console.print(f"[bold]Layers:[/] {len(manifest.layers)} ({_format_bytes(total)})")

    table = Table(title="History")
    table.add_column("Layer", style="cyan")
    table.add_column("Created", style="yellow")
    table.add_column("Created By")
    table.add_column("Author")
    table.add_column("Comment", style="dim")

    layers = iter(manifest.layers)
    for entry in config.history:
        if entry.empty_layer:
            layer_cell = "<none>"
        else:
            layer = next(layers, None)
            layer_cell = _short(layer.digest) if layer is not None else "?"
            if verbose and layer is not None:
                layer_cell = f"{layer.digest} ({_format_bytes(layer.size)})"
        created = entry.created or ""
        table.add_row(layer_cell, created, entry.created_by or "", entry.author or "",
                      entry.comment or "")
    _console.print(table)
