"""
``loris-ingest clinical`` – instrument installation and clinical data upload.

Runs :func:`loris_ingest.pipelines.clinical.run_clinical` for every enabled
project in scope.  Each project gets its own run log under
``<project>/logs/clinical`` and its own notification e-mail.
"""

from __future__ import annotations

import click
import structlog

from loris_ingest.config.loader import discover_projects
from loris_ingest.errors import LorisIngestError
from loris_ingest.models import RunContext
from loris_ingest.pipelines.clinical import run_clinical

from .common import connect, load_app_config, notifier_for, run_options, run_projects, scope_options

log = structlog.get_logger()


@click.command(name="clinical")
@scope_options
@run_options
@click.pass_context
def cli(ctx: click.Context, collection: str | None, project: str | None, force: bool, dry_run: bool) -> None:
    """Install data dictionaries, then upload new clinical data files.

    Raises:
        click.ClickException: Invalid configuration, unknown scope or failed
            authentication.
    """
    cfg = load_app_config(ctx.obj)
    try:
        projects = discover_projects(cfg, collection=collection, project=project)
    except LorisIngestError as exc:
        raise click.ClickException(str(exc)) from exc
    if not projects:
        log.warning("No enabled projects in scope", collection=collection, project=project)
        return

    context = RunContext.start(dry_run=dry_run, force=force)
    client = connect(cfg, context)
    code = run_projects(
        projects,
        "clinical",
        context,
        notifier_for(cfg),
        lambda proj: run_clinical(client, proj, context),
    )
    if code:
        ctx.exit(code)
