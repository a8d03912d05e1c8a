"""
Helpers shared by the pipeline sub-commands.

Everything here runs *before* the unit loop, so failures are fatal and are
turned into :class:`click.ClickException` (exit status 1).
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, Sequence

import click
import structlog

from loris_ingest.api.loris import LorisClient
from loris_ingest.config.loader import find_project_json, load_config, load_project, require_api
from loris_ingest.config.schema import AppConfig, ProjectConfig
from loris_ingest.core.report import RunReport
from loris_ingest.errors import LorisIngestError
from loris_ingest.models import RunContext
from loris_ingest.notify import Notifier
from loris_ingest.pipelines.base import finish_run, project_log_dir
from loris_ingest.utils.runlog import RunLog

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Shared options
# ---------------------------------------------------------------------------
def run_options(func: Callable) -> Callable:
    """Attach ``--force`` and ``--dry-run`` to a sub-command."""
    func = click.option(
        "--dry-run",
        is_flag=True,
        help="Validate and report without contacting LORIS or writing trackers.",
    )(func)
    func = click.option(
        "--force",
        is_flag=True,
        help="Reprocess units already recorded as processed.",
    )(func)
    return func


def scope_options(func: Callable) -> Callable:
    """Attach ``--collection`` / ``--project`` scope filters."""
    func = click.option("--project", help="Only this project (requires --collection).")(func)
    func = click.option("--collection", help="Only projects of this collection.")(func)
    return func


# ---------------------------------------------------------------------------
# Configuration and connection
# ---------------------------------------------------------------------------
def load_app_config(ctx_obj: dict) -> AppConfig:
    """Load and validate the configuration named on the command line.

    Raises:
        click.ClickException: Unreadable or invalid configuration, or missing
            LORIS URL/credentials.
    """
    try:
        cfg = load_config(ctx_obj.get("config_path"))
        require_api(cfg)
    except LorisIngestError as exc:
        raise click.ClickException(str(exc)) from exc
    return cfg


def connect(cfg: AppConfig, context: RunContext) -> LorisClient:
    """Build a client and authenticate (skipped for dry-runs).

    Raises:
        click.ClickException: Authentication failed.
    """
    client = LorisClient.from_settings(cfg.api)
    if context.dry_run:
        log.info("Dry run: not authenticating against LORIS")
        return client
    try:
        client.authenticate()
    except LorisIngestError as exc:
        raise click.ClickException(f"Cannot authenticate to {cfg.api.base_url}: {exc}") from exc
    log.info("Authenticated", base_url=cfg.api.base_url, user=cfg.api.username)
    return client


def nearby_project(directory: Path) -> Optional[ProjectConfig]:
    """Load the ``project.json`` next to (or above) *directory*, if any."""
    path = find_project_json(directory)
    if path is None:
        return None
    try:
        return load_project(path)
    except LorisIngestError as exc:
        raise click.ClickException(str(exc)) from exc


def notifier_for(cfg: AppConfig) -> Notifier:
    return Notifier(cfg.notification_defaults)


def exit_status(reports: Sequence[RunReport], fatal: bool = False) -> int:
    """``1`` when a unit failed (or a project aborted), ``0`` otherwise."""
    return 1 if fatal or any(r.has_failures for r in reports) else 0


def run_projects(
    projects: Sequence[ProjectConfig],
    modality: str,
    context: RunContext,
    notifier: Optional[Notifier],
    runner: Callable[[ProjectConfig], Sequence[RunReport]],
) -> int:
    """Run *runner* for each project inside its own run log; return the exit status.

    A project that aborts (unreadable directory, unexpected remote answer
    outside any unit) is logged and counted as a failure; the remaining
    projects still run.
    """
    reports: list[RunReport] = []
    aborted = False
    for project in projects:
        with RunLog(project_log_dir(project, modality), modality, context) as run_log:
            try:
                project_reports = list(runner(project))
            except (LorisIngestError, OSError, ValueError) as exc:
                log.error("Project aborted", project=project.name, error=str(exc))
                aborted = True
                continue
            finish_run(
                project_reports,
                context=context,
                run_log=run_log,
                notifier=notifier,
                project_name=project.name,
                modality=modality,
                project=project,
            )
        for report in project_reports:
            click.echo(report.render())
        reports.extend(project_reports)
    return exit_status(reports, aborted)
