"""
BIDS imaging import.

Each ``sub-*/ses-*`` directory of the project's BIDS dataset (or ``sub-*``
itself when a subject has no sessions) is one unit, named
``sub-<label>/ses-<label>`` or ``sub-<label>``.  Its fingerprint is the
newest modification time found under it, so a session is imported again
once any of its files changes.  The import itself is the server-side
``bidsimport`` script, called with the dataset root.  State lives in
``<project>/processed/.imaging_processed.json``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from loris_ingest.api.loris import LorisClient
from loris_ingest.config.schema import ProjectConfig
from loris_ingest.core.engine import SyncEngine, SyncHandler
from loris_ingest.core.report import RunReport
from loris_ingest.core.tracker import ProcessedTracker
from loris_ingest.errors import UnitSkipped
from loris_ingest.models import (
    ExternalIdentifier,
    IdentityMapping,
    RunContext,
    RunOutcome,
    UnitOfWork,
)

from .dicom import import_error

logger = logging.getLogger(__name__)

TRACKER_PATH = Path("processed") / ".imaging_processed.json"
BIDS_LOCATIONS = (
    Path("deidentified-lorisid") / "bids",
    Path("deidentified-lorisid") / "imaging" / "bids",
    Path("bids"),
    Path("BIDS"),
)
IMAGING_DIRS = ("anat", "func", "dwi", "fmap", "pet", "eeg", "meg")
DEFAULT_FLAGS = ("createcandidate", "createsession")
DEFAULT_PROFILE = "prod"


def find_bids_dir(project: ProjectConfig) -> Optional[Path]:
    """``bids_path`` from ``project.json``, else the first conventional location."""
    if project.bids_path and Path(project.bids_path).is_dir():
        return Path(project.bids_path)
    root = project.root
    for rel in BIDS_LOCATIONS:
        if (root / rel).is_dir():
            return root / rel
    return None


def newest_mtime(directory: Path) -> int:
    """Newest modification time (whole seconds) of *directory* and everything below it."""
    newest = directory.stat().st_mtime
    for path in directory.rglob("*"):
        newest = max(newest, path.stat().st_mtime)
    return int(newest)


def has_imaging_data(directory: Path) -> bool:
    if any((directory / name).is_dir() for name in IMAGING_DIRS):
        return True
    return any(directory.glob("*.nii*"))


class ImagingSessionSource:
    """Yield one unit per session directory, sorted by subject then session."""

    def __init__(self, bids_dir: Path) -> None:
        self.bids_dir = bids_dir

    def discover(self) -> Iterator[UnitOfWork]:
        for subject in sorted(p for p in self.bids_dir.glob("sub-*") if p.is_dir()):
            sessions = sorted(p for p in subject.glob("ses-*") if p.is_dir()) or [subject]
            for session in sessions:
                yield UnitOfWork(
                    name=subject.name if session == subject else f"{subject.name}/{session.name}",
                    source_path=session,
                    kind="bids_session",
                    fingerprint=str(newest_mtime(session)),
                )


class BidsImportHandler(SyncHandler):
    """Run ``bidsimport`` for the dataset holding one session."""

    def __init__(
        self,
        client: LorisClient,
        bids_dir: Path,
        *,
        flags: Sequence[str] = DEFAULT_FLAGS,
        profile: str = DEFAULT_PROFILE,
    ) -> None:
        self.client = client
        self.bids_dir = bids_dir
        self.flags = list(flags)
        self.profile = profile

    def validate(self, unit: UnitOfWork) -> None:
        if not has_imaging_data(unit.source_path):
            raise UnitSkipped("no imaging data")

    def apply(self, unit: UnitOfWork, identities: Dict[ExternalIdentifier, IdentityMapping]) -> RunOutcome:
        result = self.client.run_bids_import(str(self.bids_dir), profile=self.profile, flags=self.flags)
        payload = result.payload if isinstance(result.payload, dict) else {}
        if result.success and payload.get("status") == "success" and payload.get("code") in (0, None):
            return RunOutcome.success(str(payload.get("message") or "imported"))
        logger.debug("bidsimport answer for %s: %s", unit.name, payload or result.message)
        return RunOutcome.failed(import_error(result))


def run_imaging(
    client: LorisClient,
    project: ProjectConfig,
    context: RunContext,
    *,
    flags: Sequence[str] = DEFAULT_FLAGS,
    profile: str = DEFAULT_PROFILE,
) -> List[RunReport]:
    """Import every new or changed session of *project*'s BIDS dataset; return ``[report]``."""
    report = RunReport(f"BIDS imaging import – {project.name}")
    bids_dir = find_bids_dir(project)
    if bids_dir is None:
        logger.warning("No BIDS directory found for %s", project.name)
        report.note("no BIDS directory found")
        return [report]

    logger.info("BIDS directory: %s", bids_dir)
    handler = BidsImportHandler(client, bids_dir, flags=flags, profile=profile)
    SyncEngine(handler, ProcessedTracker(project.root / TRACKER_PATH), context).run(
        ImagingSessionSource(bids_dir).discover(), report
    )
    return [report]
