"""
``loris-ingest reidentify`` – copy a BIDS dataset with external IDs replaced by PSCIDs.
"""

from __future__ import annotations

from pathlib import Path

import click
import structlog

from loris_ingest.models import RunContext
from loris_ingest.pipelines.base import bids_log_dir, finish_run
from loris_ingest.pipelines.reidentify import run_reidentify
from loris_ingest.utils.runlog import RunLog

from .common import connect, exit_status, load_app_config, nearby_project, notifier_for, run_options

log = structlog.get_logger()

MODALITY = "bids"


@click.command(name="reidentify")
@click.argument("source_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument("target_dir", type=click.Path(file_okay=False, path_type=Path))
@run_options
@click.pass_context
def cli(ctx: click.Context, source_dir: Path, target_dir: Path, force: bool, dry_run: bool) -> None:
    """Write a reidentified copy of SOURCE_DIR into TARGET_DIR."""
    cfg = load_app_config(ctx.obj)
    project = nearby_project(source_dir)
    if project is None:
        log.info("No project.json found near dataset", source_dir=str(source_dir))
    context = RunContext.start(dry_run=dry_run, force=force)
    client = connect(cfg, context)
    name = project.name if project else source_dir.name

    with RunLog(bids_log_dir(cfg, project), "reidentify", context) as run_log:
        try:
            reports = run_reidentify(client, source_dir, target_dir, context)
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
