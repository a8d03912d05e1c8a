"""Plumbing shared by every pipeline: log locations, trackers, end-of-run reporting."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional, Sequence

from loris_ingest.config.schema import AppConfig, ProjectConfig
from loris_ingest.core.report import RunReport
from loris_ingest.models import RunContext
from loris_ingest.notify import Notifier
from loris_ingest.utils.runlog import RunLog, default_log_dir

logger = logging.getLogger(__name__)

#: Directory inside a BIDS dataset holding trackers (``code/`` is BIDS-exempt).
BIDS_STATE_DIR = Path("code") / "loris_ingest"


def project_log_dir(project: ProjectConfig, modality: str) -> Path:
    """``<project root>/logs/<modality>`` unless ``logging.log_path`` overrides it."""
    if project.logging.log_path:
        return Path(project.logging.log_path).expanduser()
    return project.root / "logs" / modality


def bids_log_dir(cfg: AppConfig, project: Optional[ProjectConfig]) -> Path:
    """``project.json`` ``logging.log_path`` → config ``logging.directory`` → temp dir."""
    if project is not None and project.logging.log_path:
        return Path(project.logging.log_path).expanduser()
    if cfg.logging.directory:
        return Path(cfg.logging.directory).expanduser()
    return default_log_dir()


def bids_state_dir(dataset: Path) -> Path:
    return Path(dataset) / BIDS_STATE_DIR


def finish_run(
    reports: Sequence[RunReport],
    *,
    context: RunContext,
    run_log: RunLog,
    notifier: Optional[Notifier],
    project_name: str,
    modality: str,
    project: Optional[ProjectConfig] = None,
) -> None:
    """Log every rendered report and e-mail them (never during a dry-run)."""
    for report in reports:
        logger.info("\n%s", report.render())
    if notifier is None or context.dry_run:
        return
    logs: Iterable[Path] = [run_log.run_path]
    if run_log.has_errors:
        logs = [run_log.run_path, run_log.error_path]
    notifier.notify(project_name, modality, reports, project=project, log_files=list(logs))
