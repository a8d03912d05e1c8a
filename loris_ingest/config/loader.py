"""
Configuration loader.

Search precedence for the client configuration (first match wins):

1. An explicit path argument (``--config`` on the CLI).
2. ``$LORIS_INGEST_CONFIG``.
3. ``loris_client_config.yaml`` / ``.yml`` / ``.json`` in the working directory.

No file at all is acceptable as long as the environment provides the
credentials: ``LORIS_BASE_URL``, ``LORIS_USERNAME``, ``LORIS_PASSWORD`` and
``LORIS_TIMEOUT`` override the ``api`` section in every case.

The module also locates ``project.json`` files, either by walking the
configured collections (clinical and DICOM pipelines) or by searching upwards
from a BIDS directory.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional

import yaml

from loris_ingest.errors import ConfigurationError

from .schema import AppConfig, ProjectConfig

logger = logging.getLogger(__name__)

CONFIG_ENV = "LORIS_INGEST_CONFIG"
CONFIG_NAMES = ("loris_client_config.yaml", "loris_client_config.yml", "loris_client_config.json")
PROJECT_FILE = "project.json"

_ENV_OVERRIDES = {
    "LORIS_BASE_URL": "base_url",
    "LORIS_USERNAME": "username",
    "LORIS_PASSWORD": "password",
    "LORIS_TIMEOUT": "timeout",
}


# --------------------------------------------------------------------------- #
# Helper functions                                                            #
# --------------------------------------------------------------------------- #
def _first_existing(*candidates: Optional[Path]) -> Optional[Path]:
    for p in candidates:
        if p is not None and p.exists():
            return p
    return None


def _load_yaml(path: Path) -> dict:
    """Read a YAML (or JSON) document; an empty file yields ``{}``."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Cannot read {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    return data


def _apply_env(raw: dict) -> dict:
    """Overlay ``LORIS_*`` environment variables onto the ``api`` section."""
    section_name = "loris" if "loris" in raw and "api" not in raw else "api"
    section = dict(raw.get(section_name) or {})
    for env, key in _ENV_OVERRIDES.items():
        value = os.environ.get(env)
        if value:
            section[key] = value
    raw = dict(raw)
    raw[section_name] = section
    return raw


def resolve_config_path(explicit: Optional[Path] = None) -> Optional[Path]:
    """Return the configuration file to load, or ``None`` when there is none.

    Raises:
        ConfigurationError: When *explicit* (or ``$LORIS_INGEST_CONFIG``)
            points at a missing file.
    """
    if explicit is not None:
        explicit = Path(explicit).expanduser()
        if not explicit.exists():
            raise ConfigurationError(f"Configuration file not found: {explicit}")
        return explicit
    env = os.environ.get(CONFIG_ENV)
    if env:
        path = Path(env).expanduser()
        if not path.exists():
            raise ConfigurationError(f"{CONFIG_ENV} points at a missing file: {path}")
        return path
    cwd = Path.cwd()
    return _first_existing(*(cwd / name for name in CONFIG_NAMES))


# --------------------------------------------------------------------------- #
# Public API                                                                  #
# --------------------------------------------------------------------------- #
def load_config(path: Optional[Path] = None) -> AppConfig:
    """Return a validated :class:`AppConfig`.

    Raises:
        ConfigurationError: Unreadable file or failed validation.
    """
    cfg_path = resolve_config_path(path)
    raw = _load_yaml(cfg_path) if cfg_path else {}
    if cfg_path:
        logger.debug("Loaded configuration from %s", cfg_path)
    else:
        logger.debug("No configuration file found; relying on environment variables")

    try:
        return AppConfig(**_apply_env(raw))
    except Exception as exc:  # pydantic.ValidationError
        raise ConfigurationError(f"Invalid configuration – {exc}") from exc


def require_api(cfg: AppConfig) -> None:
    """Raise :class:`ConfigurationError` unless URL and credentials are present."""
    missing = cfg.api.missing()
    if missing:
        raise ConfigurationError(
            "Missing LORIS settings: " + ", ".join(missing)
            + " (set them in the config file or via LORIS_* environment variables)"
        )


def load_project(path: Path, *, collection: Optional[str] = None) -> ProjectConfig:
    """Parse one ``project.json``.

    Raises:
        ConfigurationError: Unreadable or invalid file.
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot read {path}: {exc}") from exc
    try:
        project = ProjectConfig(**data)
    except Exception as exc:  # pydantic.ValidationError
        raise ConfigurationError(f"Invalid {path} – {exc}") from exc
    project.path = Path(path)
    project.collection = collection
    return project


def find_project_json(start: Path) -> Optional[Path]:
    """Search *start*, its parent and its grandparent for ``project.json``."""
    start = Path(start).expanduser().resolve()
    candidates = [start, start.parent, start.parent.parent]
    return _first_existing(*(d / PROJECT_FILE for d in candidates))


def discover_projects(
    cfg: AppConfig,
    *,
    collection: Optional[str] = None,
    project: Optional[str] = None,
) -> List[ProjectConfig]:
    """Return the enabled projects selected by the scope filters.

    Args:
        cfg: Client configuration.
        collection: Restrict to this collection.
        project: Restrict to this project (requires *collection*).

    Raises:
        ConfigurationError: When a filter names something not configured.
    """
    if project and not collection:
        raise ConfigurationError("--project requires --collection")

    collections = [c for c in cfg.collections if collection in (None, c.name)]
    if collection and not collections:
        raise ConfigurationError(f"Collection {collection!r} is not configured")

    found: List[ProjectConfig] = []
    for coll in collections:
        if not coll.enabled:
            logger.info("Collection %s is disabled; skipping", coll.name)
            continue
        entries = [p for p in coll.projects if project in (None, p.name)]
        if project and not entries:
            raise ConfigurationError(f"Project {project!r} is not configured in collection {coll.name!r}")
        for entry in entries:
            if not entry.enabled:
                logger.info("Project %s/%s is disabled; skipping", coll.name, entry.name)
                continue
            pj = Path(coll.base_path).expanduser() / entry.name / PROJECT_FILE
            if not pj.exists():
                logger.warning("No %s for %s/%s at %s; skipping", PROJECT_FILE, coll.name, entry.name, pj)
                continue
            found.append(load_project(pj, collection=coll.name))
    return found


def project_external_id(
    cfg: AppConfig,
    project_cfg: Optional[ProjectConfig],
    project_names: Iterable[Optional[str]],
) -> Optional[str]:
    """Return the ProjectExternalID for the first of *project_names* that maps.

    Lookup: config ``project_mappings`` → ``project.json`` ``project_mappings``
    → ``api.project_external_id``.
    """
    names = [n for n in project_names if n]
    for mapping in (cfg.project_mappings, project_cfg.project_mappings if project_cfg else {}):
        for name in names:
            if name in mapping:
                return str(mapping[name])
    return cfg.api.project_external_id
