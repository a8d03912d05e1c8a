"""
Package-level console logging configuration.

* Rich console output (colourised, nicely formatted) on stderr.
* structlog wired through the stdlib logger factory so CLI modules can emit
  structured events that end up in the same handlers as library modules.

Per-run log files are handled separately by :mod:`loris_ingest.utils.runlog`
because their location depends on the project being processed.

The public helper :func:`setup_logging` should be the sole entry-point used
by the CLI.
"""

from __future__ import annotations

import logging

import structlog
from rich.console import Console
from rich.logging import RichHandler
from structlog.dev import ConsoleRenderer as StructlogConsoleRenderer
from structlog.stdlib import LoggerFactory

__all__ = ["setup_logging", "console_level"]


def console_level(*, verbose: bool = False, debug: bool = False) -> int:
    """Return the console level implied by the CLI flags (INFO by default)."""
    if debug or verbose:
        return logging.DEBUG
    return logging.INFO


def setup_logging(*, verbose: bool = False, debug: bool = False) -> None:
    """Configure rich console logging and structlog.

    Args:
        verbose: Emit DEBUG-level messages of this package on the console.
        debug: Like *verbose*, plus urllib3 connection details and rich
            tracebacks with locals hidden.  Without either flag the console
            shows INFO, one line per unit outcome.
    """
    level = console_level(verbose=verbose, debug=debug)

    console = RichHandler(
        level=level,
        console=Console(stderr=True),
        rich_tracebacks=debug,
        tracebacks_show_locals=False,
        markup=False,
        show_path=debug,
    )

    # --- Configure root logger --------------------------------------------------
    # The root stays at DEBUG so per-run file handlers receive everything.
    logging.basicConfig(
        level=logging.DEBUG,
        handlers=[console],
        format="%(message)s",
        force=True,
    )
    # Third-party chatter is only interesting with --debug.
    logging.getLogger("urllib3").setLevel(logging.DEBUG if debug else logging.WARNING)

    # --- structlog binds --------------------------------------------------------
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            StructlogConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        logger_factory=LoggerFactory(),
    )
