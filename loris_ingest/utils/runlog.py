"""
Per-run log files.

Every pipeline invocation writes::

    <log_dir>/<modality>_run_<YYYY-MM-DD_HH-MM-SS>.log     (always)
    <log_dir>/<modality>_errors_<YYYY-MM-DD_HH-MM-SS>.log  (first ERROR only)

:class:`RunLog` attaches both handlers to the ``loris_ingest`` package logger
for the duration of a ``with`` block.  The error file uses a delayed
:class:`logging.FileHandler`, so it only appears on disk once something
actually went wrong.
"""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import Optional

from loris_ingest.models import RunContext

PACKAGE_LOGGER = "loris_ingest"
_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def default_log_dir() -> Path:
    return Path(tempfile.gettempdir()) / "loris-ingest-logs"


class RunLog:
    """Context manager owning one run log and one lazily created error log."""

    def __init__(self, log_dir: Path, modality: str, context: RunContext) -> None:
        self.log_dir = Path(log_dir)
        self.modality = modality
        self.context = context
        self.run_path = self.log_dir / f"{modality}_run_{context.stamp}.log"
        self.error_path = self.log_dir / f"{modality}_errors_{context.stamp}.log"
        self._handlers: list[logging.Handler] = []
        self._previous_level: Optional[int] = None
        self._logger = logging.getLogger(PACKAGE_LOGGER)

    def __enter__(self) -> "RunLog":
        self.log_dir.mkdir(parents=True, exist_ok=True)
        formatter = logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

        run_handler = logging.FileHandler(self.run_path, encoding="utf-8")
        run_handler.setLevel(logging.DEBUG)
        run_handler.setFormatter(formatter)

        error_handler = logging.FileHandler(self.error_path, encoding="utf-8", delay=True)
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(formatter)

        self._handlers = [run_handler, error_handler]
        for handler in self._handlers:
            self._logger.addHandler(handler)
        self._previous_level = self._logger.level
        self._logger.setLevel(logging.DEBUG)

        mode = " (DRY RUN)" if self.context.dry_run else ""
        force = " (FORCE)" if self.context.force else ""
        self._logger.info(
            "=== %s run started %s%s%s ===",
            self.modality, self.context.started_at.isoformat(timespec="seconds"), mode, force,
        )
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc is not None:
            self._logger.error("Run aborted: %s", exc)
        self._logger.info("=== %s run finished ===", self.modality)
        for handler in self._handlers:
            self._logger.removeHandler(handler)
            handler.close()
        self._handlers = []
        if self._previous_level is not None:
            self._logger.setLevel(self._previous_level)

    @property
    def has_errors(self) -> bool:
        return self.error_path.exists()
