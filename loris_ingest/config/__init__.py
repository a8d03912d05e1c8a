"""
Configuration package façade.

Exports the small, stable surface that external callers rely on:

* :func:`load_config` – parse and validate the client configuration.
* :func:`discover_projects` / :func:`load_project` / :func:`find_project_json`
  – locate and parse per-project ``project.json`` files.
* :class:`AppConfig` / :class:`ProjectConfig` – the validated models.
"""

from .loader import (  # noqa: F401  (import re-exposed on purpose)
    discover_projects,
    find_project_json,
    load_config,
    load_project,
    project_external_id,
    require_api,
)
from .schema import AppConfig, ProjectConfig  # noqa: F401

__all__: list[str] = [
    "AppConfig",
    "ProjectConfig",
    "discover_projects",
    "find_project_json",
    "load_config",
    "load_project",
    "project_external_id",
    "require_api",
]
