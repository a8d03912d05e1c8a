"""
Pydantic models mirroring the client configuration and ``project.json``.

The client configuration (``loris_client_config.yaml``) describes *how* to
reach LORIS and *where* the projects live; each project directory carries a
``project.json`` describing the project itself (mount path, recipients,
excluded files …).  Both are validated once on load so the pipelines work
with typed objects instead of nested dictionaries.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

# --------------------------------------------------------------------------- #
# 1.  Client configuration                                                    #
# --------------------------------------------------------------------------- #


class ApiSettings(BaseModel):
    """Connection parameters for the LORIS instance."""

    base_url: str = ""
    username: str = ""
    password: str = ""
    api_version: str = "v0.0.4-dev"
    token_expiry_minutes: int = 55
    timeout: float = 60.0
    script_timeout: float = 1800.0
    verify_ssl: bool = True
    project_external_id: Optional[str] = Field(
        None, description="Fallback ProjectExternalID used when no mapping matches"
    )
    upload_transports: List[str] = Field(default_factory=lambda: ["api", "module"])

    @model_validator(mode="after")
    def _known_transports(self):
        """Reject typos in ``upload_transports`` early."""
        unknown = set(self.upload_transports) - {"api", "module"}
        if unknown:
            raise ValueError("Unknown upload transport(s): " + ", ".join(sorted(unknown)))
        if not self.upload_transports:
            raise ValueError("upload_transports must list at least one route")
        return self

    def missing(self) -> List[str]:
        """Names of required fields that are still empty."""
        return [k for k in ("base_url", "username", "password") if not getattr(self, k)]


class SmtpSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    host: str
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    sender: str = Field("loris-ingest@localhost", alias="from")
    use_tls: bool = True


class NotificationDefaults(BaseModel):
    smtp: Optional[SmtpSettings] = None
    default_on_success: List[str] = Field(default_factory=list)
    default_on_error: List[str] = Field(default_factory=list)


class ProjectEntry(BaseModel):
    name: str
    enabled: bool = True


class Collection(BaseModel):
    """A directory holding several project directories."""

    name: str
    base_path: Path
    enabled: bool = True
    projects: List[ProjectEntry] = Field(default_factory=list)


class LoggingSettings(BaseModel):
    directory: Optional[Path] = None


class AppConfig(BaseModel):
    """Top-level client configuration."""

    api: ApiSettings = Field(default_factory=ApiSettings)
    collections: List[Collection] = Field(default_factory=list)
    notification_defaults: NotificationDefaults = Field(default_factory=NotificationDefaults)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    project_mappings: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _accept_loris_section(cls, values):
        """Accept ``loris:`` as a synonym for the ``api:`` section."""
        if isinstance(values, dict) and "loris" in values and "api" not in values:
            values = dict(values)
            values["api"] = values.pop("loris")
        return values


# --------------------------------------------------------------------------- #
# 2.  project.json                                                            #
# --------------------------------------------------------------------------- #


class Recipients(BaseModel):
    on_success: List[str] = Field(default_factory=list)
    on_error: List[str] = Field(default_factory=list)


class DataAccess(BaseModel):
    model_config = ConfigDict(extra="allow")

    mount_path: Optional[Path] = None


class ProjectLogging(BaseModel):
    model_config = ConfigDict(extra="allow")

    log_path: Optional[Path] = None


class ProjectConfig(BaseModel):
    """Contents of one ``project.json``; unknown keys are preserved."""

    model_config = ConfigDict(extra="allow")

    project_common_name: Optional[str] = None
    project: Optional[str] = None
    project_full_name: Optional[str] = None
    site: Optional[str] = None
    data_access: DataAccess = Field(default_factory=DataAccess)
    exclude_data_files: List[str] = Field(default_factory=list)
    notification_emails: Dict[str, Recipients] = Field(default_factory=dict)
    logging: ProjectLogging = Field(default_factory=ProjectLogging)
    bids_path: Optional[Path] = Field(None, description="BIDS dataset imported by the imaging pipeline")
    project_mappings: Dict[str, str] = Field(default_factory=dict)

    # Set by the loader, never read from disk.
    path: Optional[Path] = Field(None, exclude=True)
    collection: Optional[str] = Field(None, exclude=True)

    @property
    def name(self) -> str:
        """Display name: common name, then LORIS project name, then directory."""
        if self.project_common_name:
            return self.project_common_name
        if self.project:
            return self.project
        return self.path.parent.name if self.path else "unknown"

    @property
    def root(self) -> Path:
        """Project data root: ``data_access.mount_path`` or the directory of ``project.json``."""
        if self.data_access.mount_path:
            return Path(self.data_access.mount_path)
        if self.path is None:
            raise ValueError("project has neither mount_path nor a known location")
        return self.path.parent

    def recipients(self, modality: str) -> Recipients:
        return self.notification_emails.get(modality, Recipients())
