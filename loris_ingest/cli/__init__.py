"""Expose the Click group behind the ``loris-ingest`` console script.

The group:

* wires the global flags (configuration file, verbosity);
* sets up console logging via :func:`loris_ingest.utils.logging.setup_logging`;
* stores the configuration path in the Click context so each sub-command
  loads (and validates) the configuration itself;
* registers one sub-command per pipeline, imported lazily so ``--help`` stays
  fast and does not pull in pandas.
"""

from __future__ import annotations

import importlib
from pathlib import Path
from typing import Any, Dict

import click

from loris_ingest import __version__
from loris_ingest.utils.logging import setup_logging


class LazyGroup(click.Group):
    """Click group that imports sub-commands lazily."""

    def __init__(self, *args, **kwargs):
        self._lazy: dict[str, str] = {}
        super().__init__(*args, **kwargs)

    def set_lazy_command(self, name: str, target: str) -> None:
        """Register *name* to be imported from ``target`` on first use."""
        self._lazy[name] = target

    def list_commands(self, ctx):
        return sorted(set(super().list_commands(ctx)) | set(self._lazy))

    def get_command(self, ctx, cmd_name):  # noqa: D401 - Click signature
        cmd = super().get_command(ctx, cmd_name)
        if cmd is not None:
            return cmd
        target = self._lazy.get(cmd_name)
        if not target:
            return None
        module_name, attr = target.split(":", 1)
        cmd = getattr(importlib.import_module(module_name), attr)
        self.add_command(cmd, name=cmd_name)
        return cmd


# ─────────────────────────────────────────────────────────────────────────────
# Context settings shared by the entire Click hierarchy
# ─────────────────────────────────────────────────────────────────────────────
_CTX: Dict[str, Any] = dict(
    help_option_names=["-h", "--help"],
    show_default=True,
    max_content_width=120,
)


@click.group(
    cls=LazyGroup,
    context_settings=_CTX,
    help="""\b
loris-ingest – push clinical, DICOM and BIDS data into LORIS.

""",
)
@click.version_option(__version__)
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Client configuration (default: $LORIS_INGEST_CONFIG or ./loris_client_config.yaml).",
)
@click.option("-v", "--verbose", is_flag=True, help="DEBUG-level console output (default: INFO, one line per unit).")
@click.option("--debug", is_flag=True, help="DEBUG console output, including HTTP details.")
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, verbose: bool, debug: bool) -> None:
    """Root command executed by *loris-ingest*.

    Args:
        ctx: Click runtime context that carries objects across sub-commands.
        config_path: Explicit configuration file supplied via ``--config``.
        verbose: Emit DEBUG-level messages on the console.
        debug: Also emit urllib3 details and rich tracebacks.
    """
    setup_logging(verbose=verbose, debug=debug)
    ctx.obj = {
        "config_path": config_path,
        "verbose": verbose,
        "debug": debug,
    }


main.set_lazy_command("clinical", "loris_ingest.cli.clinical:cli")
main.set_lazy_command("dicom", "loris_ingest.cli.dicom:cli")
main.set_lazy_command("imaging", "loris_ingest.cli.imaging:cli")
main.set_lazy_command("participants", "loris_ingest.cli.participants:cli")
main.set_lazy_command("reidentify", "loris_ingest.cli.reidentify:cli")

cli = main
__all__: list[str] = ["main"]
