"""
``loris-ingest dicom`` – import DICOM studies through ``importdicomstudy``.

Either every enabled project in scope is processed, or a single project
directory given with ``--project-dir`` (its ``project.json`` is optional).
"""

from __future__ import annotations

from pathlib import Path
from typing import Tuple

import click
import structlog

from loris_ingest.config.loader import discover_projects
from loris_ingest.config.schema import ProjectConfig
from loris_ingest.errors import LorisIngestError
from loris_ingest.models import RunContext
from loris_ingest.pipelines.dicom import DEFAULT_FLAGS, DEFAULT_PROFILE, run_dicom

from .common import (
    connect,
    load_app_config,
    nearby_project,
    notifier_for,
    run_options,
    run_projects,
    scope_options,
)

log = structlog.get_logger()


def _standalone_project(project_dir: Path) -> ProjectConfig:
    """``project.json`` of *project_dir*, or a bare config rooted there."""
    project = nearby_project(project_dir)
    if project is not None and project.root.resolve() == project_dir.resolve():
        return project
    bare = ProjectConfig(
        project_common_name=project_dir.name,
        data_access={"mount_path": project_dir},
    )
    if project is not None:
        bare.notification_emails = project.notification_emails
    return bare


@click.command(name="dicom")
@scope_options
@click.option(
    "--project-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Process this project directory instead of the configured collections.",
)
@click.option(
    "--flag",
    "flags",
    multiple=True,
    help=f"importdicomstudy flag (repeatable; default: {', '.join(DEFAULT_FLAGS)}).",
)
@click.option("--profile", default=DEFAULT_PROFILE, help="LORIS-MRI configuration profile.")
@run_options
@click.pass_context
def cli(
    ctx: click.Context,
    collection: str | None,
    project: str | None,
    project_dir: Path | None,
    flags: Tuple[str, ...],
    profile: str,
    force: bool,
    dry_run: bool,
) -> None:
    """Import new DICOM studies from ``deidentified-raw/imaging/dicoms``.

    Raises:
        click.ClickException: Invalid configuration, unknown scope, conflicting
            options or failed authentication.
    """
    if project_dir is not None and (collection or project):
        raise click.ClickException("--project-dir cannot be combined with --collection/--project")

    cfg = load_app_config(ctx.obj)
    if project_dir is not None:
        projects = [_standalone_project(project_dir)]
    else:
        try:
            projects = discover_projects(cfg, collection=collection, project=project)
        except LorisIngestError as exc:
            raise click.ClickException(str(exc)) from exc
    if not projects:
        log.warning("No enabled projects in scope", collection=collection, project=project)
        return

    context = RunContext.start(dry_run=dry_run, force=force)
    client = connect(cfg, context)
    chosen_flags = flags or DEFAULT_FLAGS
    code = run_projects(
        projects,
        "dicom",
        context,
        notifier_for(cfg),
        lambda proj: run_dicom(
            client,
            proj.root,
            context,
            flags=chosen_flags,
            profile=profile,
            title=f"DICOM import – {proj.name}",
        ),
    )
    if code:
        ctx.exit(code)
