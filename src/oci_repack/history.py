"""
Image history bookkeeping.

Every mutation appends exactly one history entry to the image config. Entries
that describe a real layer (empty_layer=False) line up one-to-one, in order,
with rootfs.diff_ids and with the manifest's layers; config-only edits add an
entry with empty_layer=True and no layer.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from .models import History, ImageConfig, Manifest
from .storage.oci_errors import OciInvalidState

__all__ = ["make_history", "parse_created", "format_created", "check_history", "history_is_consistent",
           "non_empty_count"]


def make_history(created_by: str, *, author: Optional[str] = None,
                 comment: Optional[str] = None, created: Optional[datetime] = None,
                 empty_layer: bool = False) -> History:
    """
    Build a history entry.

    Args:
        created_by: Command that produced the change (e.g. "oci-repack repack")
        author: Optional author
        comment: Optional free-form comment
        created: Timestamp; defaults to now in UTC
        empty_layer: True for config-only edits

    Returns:
        History entry ready to pass to the mutator
    """
    return History(
        created=format_created(created or datetime.now(timezone.utc)),
        created_by=created_by,
        author=author,
        comment=comment,
        empty_layer=empty_layer,
    )


def parse_created(value: str) -> datetime:
    """
    Parse an ISO8601 timestamp for a history entry.

    Naive timestamps are taken to be UTC. A trailing "Z" is accepted.

    Raises:
        ValueError: If the value is not ISO8601
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValueError(f"invalid ISO8601 timestamp: {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_created(value: datetime) -> str:
    """Render a timestamp as RFC 3339 in UTC with a "Z" suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def non_empty_count(history: List[History]) -> int:
    return sum(1 for h in history if not h.empty_layer)


def history_is_consistent(config: ImageConfig, manifest: Manifest) -> bool:
    n_layers = len(manifest.layers)
    return (len(config.rootfs.diff_ids) == n_layers
            and non_empty_count(config.history) == n_layers)


def check_history(config: ImageConfig, manifest: Manifest) -> None:
    """
    Verify that diff_ids, layers and non-empty history entries agree.

    Raises:
        OciInvalidState: If the three counts differ
    """
    n_diff_ids = len(config.rootfs.diff_ids)
    n_layers = len(manifest.layers)
    n_history = non_empty_count(config.history)
    if not n_diff_ids == n_layers == n_history:
        raise OciInvalidState(
            f"image history is inconsistent: {n_diff_ids} diff_ids, {n_layers} layers, "
            f"{n_history} non-empty history entries"
        )
