"""Archival of successfully ingested source files."""

from __future__ import annotations

import shutil
from pathlib import Path

from loris_ingest.models import RunContext


def archive_copy(src: Path, archive_root: Path, context: RunContext) -> Path:
    """Copy *src* into ``<archive_root>/<YYYY-MM-DD>/`` and return the copy's path.

    An existing file of the same name is kept; the new copy is prefixed with
    the run timestamp instead.

    Raises:
        OSError: When the directory cannot be created or the copy fails.
    """
    dest_dir = archive_root / context.started_at.strftime("%Y-%m-%d")
    dest_dir.mkdir(parents=True, exist_ok=True)
    target = dest_dir / src.name
    if target.exists():
        target = dest_dir / f"{context.stamp}_{src.name}"
    shutil.copy2(src, target)
    return target
