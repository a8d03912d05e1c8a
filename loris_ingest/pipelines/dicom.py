"""
DICOM study import.

Each non-hidden directory under ``<project>/deidentified-raw/imaging/dicoms``
is one study.  Studies are handed to the server-side ``importdicomstudy``
script one at a time; the tracker ``.dicom_import_processed.json`` in the
same directory remembers imported (and already existing) studies.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterator, List, Sequence

from loris_ingest.api.loris import LorisClient
from loris_ingest.core.engine import SyncEngine, SyncHandler
from loris_ingest.core.report import RunReport
from loris_ingest.core.tracker import ProcessedTracker
from loris_ingest.errors import ValidationError
from loris_ingest.models import (
    ExternalIdentifier,
    IdentityMapping,
    RunContext,
    RunOutcome,
    UnitOfWork,
    UploadResult,
)

logger = logging.getLogger(__name__)

DICOM_SUBDIR = Path("deidentified-raw") / "imaging" / "dicoms"
TRACKER_NAME = ".dicom_import_processed.json"
DEFAULT_FLAGS = ("insert", "verbose")
DEFAULT_PROFILE = "database_config.py"


class DicomStudySource:
    """Yield one unit per study directory, sorted by name."""

    def __init__(self, dicom_root: Path) -> None:
        self.dicom_root = dicom_root

    def discover(self) -> Iterator[UnitOfWork]:
        if not self.dicom_root.is_dir():
            logger.info("Directory not found: %s", self.dicom_root)
            return
        for entry in sorted(self.dicom_root.iterdir()):
            if entry.name.startswith(".") or not entry.is_dir():
                continue
            yield UnitOfWork(name=entry.name, source_path=entry, kind="dicom_study")


def import_error(result: UploadResult) -> str:
    """Condense a failed import answer into one reason string."""
    payload = result.payload if isinstance(result.payload, dict) else {}
    errors = payload.get("errors") or []
    messages = [
        str(e.get("message") or e.get("type") or "unknown") if isinstance(e, dict) else str(e)
        for e in errors
    ]
    if messages:
        return "; ".join(messages[:3])
    output = str(payload.get("output") or "").strip()
    if output:
        return output.splitlines()[-1]
    if payload.get("error_type"):
        return str(payload["error_type"])
    return result.message or f"HTTP {result.status_code}"


class DicomImportHandler(SyncHandler):
    """Run ``importdicomstudy`` for one study directory."""

    def __init__(
        self,
        client: LorisClient,
        *,
        flags: Sequence[str] = DEFAULT_FLAGS,
        profile: str = DEFAULT_PROFILE,
    ) -> None:
        self.client = client
        self.flags = list(flags)
        self.profile = profile

    def validate(self, unit: UnitOfWork) -> None:
        if not any(p.is_file() for p in unit.source_path.rglob("*")):
            raise ValidationError("empty study directory")

    def apply(self, unit: UnitOfWork, identities: Dict[ExternalIdentifier, IdentityMapping]) -> RunOutcome:
        result = self.client.import_dicom_study(
            str(unit.source_path), profile=self.profile, flags=self.flags
        )
        payload = result.payload if isinstance(result.payload, dict) else {}
        if payload.get("error_type") == "ALREADY_EXISTS" or result.is_conflict:
            return RunOutcome.already_exists("study already archived in LORIS")

        status = payload.get("status")
        code = result.status_code or 0
        if status == "success" or (200 <= code < 300 and status != "error" and result.success):
            return RunOutcome.success(str(payload.get("message") or "imported"))

        logger.debug("importdicomstudy answer for %s: %s", unit.name, payload or result.message)
        return RunOutcome.failed(import_error(result))


def run_dicom(
    client: LorisClient,
    project_dir: Path,
    context: RunContext,
    *,
    flags: Sequence[str] = DEFAULT_FLAGS,
    profile: str = DEFAULT_PROFILE,
    title: str = "",
) -> List[RunReport]:
    """Import every new study of *project_dir*; return ``[report]``."""
    dicom_root = Path(project_dir) / DICOM_SUBDIR
    report = RunReport(title or f"DICOM import – {Path(project_dir).name}")
    handler = DicomImportHandler(client, flags=flags, profile=profile)
    SyncEngine(handler, ProcessedTracker(dicom_root / TRACKER_NAME), context).run(
        DicomStudySource(dicom_root).discover(), report
    )
    return [report]
