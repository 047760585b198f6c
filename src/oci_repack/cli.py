"""
oci-repack CLI

Implements the image layout verbs with Operations facade integration:
- init: Create an empty image layout
- new: Create an empty image
- unpack: Extract an image into an editable bundle
- repack: Commit bundle changes as a new layer
- insert: Add a host file or directory as a new layer
- config: Edit image configuration
- tag list/add/rm: Manage references
- stat: Show manifest and history
"""
from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import typer

from .cli_context import CLIContext
from .history import parse_created
from .operations import ConfigEdits, HistoryOptions, run_and_exit
from .operations.printers import (
    print_commit_summary, print_init_summary, print_stat, print_tags, print_unpack_summary
)

app = typer.Typer(name="oci-repack", help="Unpack, modify and repack OCI images in a local image layout")
tag_app = typer.Typer(help="Manage image tags")
app.add_typer(tag_app, name="tag")

_LOG_LEVELS = ("debug", "info", "warning", "error")


@app.callback()
def _main(
    log_level: str = typer.Option("warning", "--log-level", help="Log level: debug, info, warning or error"),
) -> None:
    """Unpack, modify and repack OCI images in a local image layout."""
    level = log_level.lower()
    if level not in _LOG_LEVELS:
        raise typer.BadParameter(f"must be one of {', '.join(_LOG_LEVELS)}", param_hint="--log-level")
    logging.basicConfig(level=level.upper(), format="%(levelname)s %(name)s: %(message)s")


def _parse_image(value: str) -> Tuple[str, Optional[str]]:
    """
    Split an --image value into layout path and tag.

    Supports formats:
    - "path/to/layout" -> (layout, None), the default tag applies
    - "path/to/layout:tag" -> (layout, tag)
    - r"C:\\layout" -> (layout, None) [Windows drive letters are not tags]

    Args:
        value: --image argument

    Returns:
        Tuple of (layout path, tag or None)

    Raises:
        ValueError: If the layout path is empty
    """
    value = value.strip()
    layout, sep, tag = value.rpartition(":")
    if sep and tag and "/" not in tag and "\\" not in tag:
        if not layout:
            raise ValueError(f"Invalid image reference, missing layout path: {value}")
        if not (len(layout) == 1 and layout.isalpha()):
            return layout, tag
    if not value:
        raise ValueError("Image layout path cannot be empty")
    return value, None


def _history_options(author: Optional[str], comment: Optional[str],
                     created: Optional[str], created_by: Optional[str]) -> HistoryOptions:
    return HistoryOptions(
        author=author,
        comment=comment,
        created=parse_created(created) if created else None,
        created_by=created_by,
    )


IMAGE_HELP = "Image layout and tag as <layout>[:<tag>]"


@app.command()
def init(
    layout: str = typer.Option(..., "--layout", help="Path of the new image layout"),
) -> None:
    """Create an empty image layout."""

    def _init() -> None:
        context = CLIContext.from_env()
        path = context.ops.init(layout)
        print_init_summary(str(path))

    run_and_exit(_init)


@app.command()
def new(
    image: str = typer.Option(..., "--image", help=IMAGE_HELP),
) -> None:
    """Create an image with no layers."""

    def _new() -> None:
        layout, tag = _parse_image(image)
        context = CLIContext.from_env()
        result = context.ops.new(layout, tag)
        print_commit_summary(result)

    run_and_exit(_new)


@app.command()
def unpack(
    bundle: str = typer.Argument(..., help="Bundle directory to create"),
    image: str = typer.Option(..., "--image", help=IMAGE_HELP),
) -> None:
    """Extract an image into a bundle for editing."""

    def _unpack() -> None:
        layout, tag = _parse_image(image)
        context = CLIContext.from_env()
        result = context.ops.unpack(layout, tag, bundle)
        print_unpack_summary(result)

    run_and_exit(_unpack)


@app.command()
def repack(
    bundle: str = typer.Argument(..., help="Bundle directory created by unpack"),
    image: str = typer.Option(..., "--image", help="Image layout and tag to update as <layout>[:<tag>]"),
    refresh_bundle: bool = typer.Option(True, "--refresh-bundle/--no-refresh-bundle",
                                        help="Re-snapshot the bundle so it can be repacked again"),
    history_author: Optional[str] = typer.Option(None, "--history.author", help="Author of the history entry"),
    history_comment: Optional[str] = typer.Option(None, "--history.comment", help="Comment of the history entry"),
    history_created: Optional[str] = typer.Option(None, "--history.created", help="ISO8601 creation time"),
    history_created_by: Optional[str] = typer.Option(None, "--history.created_by", help="Command recorded in history"),
    verbose: bool = typer.Option(False, "--verbose", help="List the changeset"),
) -> None:
    """Commit the changes made in a bundle as a new layer."""

    def _repack() -> None:
        layout, tag = _parse_image(image)
        history = _history_options(history_author, history_comment, history_created, history_created_by)
        context = CLIContext.from_env(verbose=verbose)
        result = context.ops.repack(layout, bundle, tag=tag, history=history,
                                    refresh_bundle=refresh_bundle)
        print_commit_summary(result, verbose=context.config.verbose)

    run_and_exit(_repack)


@app.command()
def insert(
    source: str = typer.Argument(..., help="Host file or directory to insert"),
    target: str = typer.Argument(..., help="Destination path inside the image"),
    image: str = typer.Option(..., "--image", help=IMAGE_HELP),
    tag: Optional[str] = typer.Option(None, "--tag", help="Tag the result under this name instead"),
    opaque: bool = typer.Option(False, "--opaque", help="Hide lower-layer content under a directory target"),
    history_author: Optional[str] = typer.Option(None, "--history.author", help="Author of the history entry"),
    history_comment: Optional[str] = typer.Option(None, "--history.comment", help="Comment of the history entry"),
    history_created: Optional[str] = typer.Option(None, "--history.created", help="ISO8601 creation time"),
    history_created_by: Optional[str] = typer.Option(None, "--history.created_by", help="Command recorded in history"),
) -> None:
    """Add a host file or directory to an image as a new layer."""

    def _insert() -> None:
        layout, src_tag = _parse_image(image)
        history = _history_options(history_author, history_comment, history_created, history_created_by)
        context = CLIContext.from_env()
        result = context.ops.insert(layout, src_tag, source, target, new_tag=tag,
                                    opaque=opaque, history=history)
        print_commit_summary(result)

    run_and_exit(_insert)


@app.command()
def config(
    image: str = typer.Option(..., "--image", help=IMAGE_HELP),
    tag: Optional[str] = typer.Option(None, "--tag", help="Tag the result under this name instead"),
    env: Optional[List[str]] = typer.Option(None, "--config.env", help="Set an environment variable (KEY=VALUE)"),
    label: Optional[List[str]] = typer.Option(None, "--config.label", help="Set a label (KEY=VALUE)"),
    cmd: Optional[List[str]] = typer.Option(None, "--config.cmd", help="Replace Cmd (repeat for each argument)"),
    entrypoint: Optional[List[str]] = typer.Option(None, "--config.entrypoint",
                                                   help="Replace Entrypoint (repeat for each argument)"),
    working_dir: Optional[str] = typer.Option(None, "--config.workingdir", help="Set the working directory"),
    user: Optional[str] = typer.Option(None, "--config.user", help="Set the user"),
    author: Optional[str] = typer.Option(None, "--author", help="Set the image author"),
    architecture: Optional[str] = typer.Option(None, "--architecture", help="Set the image architecture"),
    os_name: Optional[str] = typer.Option(None, "--os", help="Set the image operating system"),
    history_author: Optional[str] = typer.Option(None, "--history.author", help="Author of the history entry"),
    history_comment: Optional[str] = typer.Option(None, "--history.comment", help="Comment of the history entry"),
    history_created: Optional[str] = typer.Option(None, "--history.created", help="ISO8601 creation time"),
    history_created_by: Optional[str] = typer.Option(None, "--history.created_by", help="Command recorded in history"),
) -> None:
    """Edit image configuration without adding a layer."""

    def _config() -> None:
        layout, src_tag = _parse_image(image)
        edits = ConfigEdits(
            env=list(env or []),
            labels=list(label or []),
            cmd=list(cmd) if cmd else None,
            entrypoint=list(entrypoint) if entrypoint else None,
            working_dir=working_dir,
            user=user,
            author=author,
            architecture=architecture,
            os=os_name,
        )
        history = _history_options(history_author, history_comment, history_created, history_created_by)
        context = CLIContext.from_env()
        result = context.ops.config(layout, src_tag, edits, new_tag=tag, history=history)
        print_commit_summary(result)

    run_and_exit(_config)


@app.command()
def stat(
    image: str = typer.Option(..., "--image", help=IMAGE_HELP),
    verbose: bool = typer.Option(False, "--verbose", help="Show full layer digests"),
) -> None:
    """Show the manifest digest and history of an image."""

    def _stat() -> None:
        layout, tag = _parse_image(image)
        context = CLIContext.from_env(verbose=verbose)
        print_stat(context.ops.stat(layout, tag), verbose=context.config.verbose)

    run_and_exit(_stat)


@tag_app.command("list")
def tag_list(
    layout: str = typer.Option(..., "--layout", help="Image layout path"),
) -> None:
    """List tags."""

    def _list() -> None:
        context = CLIContext.from_env()
        print_tags(context.ops.tag_list(layout))

    run_and_exit(_list)


@tag_app.command("add")
def tag_add(
    new_tag: str = typer.Argument(..., help="New tag name"),
    image: str = typer.Option(..., "--image", help=IMAGE_HELP),
) -> None:
    """Point a new tag at an existing image."""

    def _add() -> None:
        layout, tag = _parse_image(image)
        context = CLIContext.from_env()
        name = context.ops.tag_add(layout, tag, new_tag)
        typer.echo(f"Tagged {name}")

    run_and_exit(_add)


@tag_app.command("rm")
def tag_rm(
    image: str = typer.Option(..., "--image", help="Image layout and tag as <layout>:<tag>"),
) -> None:
    """Remove a tag."""

    def _rm() -> None:
        layout, tag = _parse_image(image)
        if tag is None:
            raise ValueError("tag rm needs an explicit tag: --image <layout>:<tag>")
        context = CLIContext.from_env()
        context.ops.tag_rm(layout, tag)
        typer.echo(f"Removed tag {tag}")

    run_and_exit(_rm)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
