"""
``loris-ingest imaging`` – import BIDS sessions through ``bidsimport``.
"""

from __future__ import annotations

from typing import Tuple

import click
import structlog

from loris_ingest.config.loader import discover_projects
from loris_ingest.errors import LorisIngestError
from loris_ingest.models import RunContext
from loris_ingest.pipelines.imaging import DEFAULT_FLAGS, DEFAULT_PROFILE, run_imaging

from .common import connect, load_app_config, notifier_for, run_options, run_projects, scope_options

log = structlog.get_logger()


@click.command(name="imaging")
@scope_options
@click.option(
    "--flag",
    "flags",
    multiple=True,
    help=f"bidsimport flag (repeatable; default: {', '.join(DEFAULT_FLAGS)}).",
)
@click.option("--profile", default=DEFAULT_PROFILE, help="LORIS-MRI configuration profile.")
@run_options
@click.pass_context
def cli(
    ctx: click.Context,
    collection: str | None,
    project: str | None,
    flags: Tuple[str, ...],
    profile: str,
    force: bool,
    dry_run: bool,
) -> None:
    """Import new or changed BIDS imaging sessions of every project in scope.

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
    chosen_flags = flags or DEFAULT_FLAGS
    code = run_projects(
        projects,
        "imaging",
        context,
        notifier_for(cfg),
        lambda proj: run_imaging(client, proj, context, flags=chosen_flags, profile=profile),
    )
    if code:
        ctx.exit(code)
