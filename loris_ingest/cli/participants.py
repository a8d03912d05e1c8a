"""
``loris-ingest participants`` – create LORIS candidates for a BIDS dataset.

Every ``participants.tsv`` row whose external ID is unknown to LORIS becomes a
candidate (PSCID = external ID) and the external ID is linked to it.  The
``project.json`` is looked up in the dataset, its parent and its grandparent;
it supplies the default LORIS project, recipients and the log location.
"""

from __future__ import annotations

from pathlib import Path

import click
import structlog

from loris_ingest.models import RunContext
from loris_ingest.pipelines.base import bids_log_dir, finish_run
from loris_ingest.pipelines.participants import run_participants
from loris_ingest.utils.runlog import RunLog

from .common import connect, exit_status, load_app_config, nearby_project, notifier_for, run_options

log = structlog.get_logger()

MODALITY = "bids"


@click.command(name="participants")
@click.argument("bids_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--project", "project_name", help="LORIS project for rows without a project column.")
@run_options
@click.pass_context
def cli(ctx: click.Context, bids_dir: Path, project_name: str | None, force: bool, dry_run: bool) -> None:
    """Synchronise BIDS_DIR/participants.tsv with LORIS candidates.

    Raises:
        click.ClickException: Invalid configuration, failed authentication or
            unusable ``participants.tsv``.
    """
    cfg = load_app_config(ctx.obj)
    project = nearby_project(bids_dir)
    if project is None:
        log.info("No project.json found near dataset", bids_dir=str(bids_dir))

    context = RunContext.start(dry_run=dry_run, force=force)
    client = connect(cfg, context)
    name = project.name if project else bids_dir.name

    with RunLog(bids_log_dir(cfg, project), "participant_sync", context) as run_log:
        try:
            reports = run_participants(
                client, cfg, bids_dir, context, project=project, project_override=project_name
            )
        except (FileNotFoundError, ValueError) as exc:
            raise click.ClickException(str(exc)) from exc
        finish_run(
            reports,
            context=context,
            run_log=run_log,
            notifier=notifier_for(cfg),
            project_name=name,
            modality=MODALITY,
            project=project,
        )
    for report in reports:
        click.echo(report.render())
    code = exit_status(reports)
    if code:
        ctx.exit(code)
