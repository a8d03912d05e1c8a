"""
Clinical ingestion: instrument installation followed by data upload.

Per project (``<root>`` is ``data_access.mount_path``)::

    <root>/documentation/data_dictionary/*.{linst,csv,json}   → step 1, install
    <root>/deidentified-raw/clinical/*.{csv,tsv}              → step 2, upload
    <root>/processed/clinical/<YYYY-MM-DD>/                   ← archived copies
    <root>/logs/clinical/clinical_run_<stamp>.log             ← run log

Both steps run through :class:`~loris_ingest.core.engine.SyncEngine` with
their own tracker, so re-running the pipeline only touches new or changed
files.

Instrument resolution for a data file:

1. the file stem, when LORIS knows an instrument of that name;
2. otherwise every ``<instrument>_complete`` header column whose instrument
   exists (a few REDCap bookkeeping forms are ignored).

One instrument is uploaded directly; several are uploaded as a single
multi-instrument file.  Rows that create candidates come back as an
``idMapping`` and are remembered by the identity resolver.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from loris_ingest.api.loris import LorisClient
from loris_ingest.api.normalize import looks_already_installed
from loris_ingest.config.schema import ProjectConfig
from loris_ingest.core.engine import SyncEngine, SyncHandler
from loris_ingest.core.report import RunReport
from loris_ingest.core.resolver import IdentityResolver
from loris_ingest.core.tracker import ProcessedTracker
from loris_ingest.errors import UnitSkipped, ValidationError
from loris_ingest.models import (
    ExternalIdentifier,
    IdentityMapping,
    ResolutionSource,
    RunContext,
    RunOutcome,
    UnitOfWork,
    file_fingerprint,
)
from loris_ingest.utils.archive import archive_copy
from loris_ingest.utils.tables import read_table

logger = logging.getLogger(__name__)

DD_SUBDIR = Path("documentation") / "data_dictionary"
DATA_SUBDIR = Path("deidentified-raw") / "clinical"
ARCHIVE_SUBDIR = Path("processed") / "clinical"
INSTALL_TRACKER = ".instrument_install_processed.json"
UPLOAD_TRACKER = ".clinical_upload_processed.json"

#: Data-dictionary extension → LORIS install type.
DD_TYPES = {".csv": "redcap", ".linst": "linst", ".json": "bids"}
#: Data-file extension → upload format.
DATA_FORMATS = {".csv": "LORIS_CSV", ".tsv": "BIDS_TSV"}
#: REDCap forms that never correspond to a LORIS instrument.
IGNORED_FORMS = frozenset({"nip_connector", "project_request_form"})

_COMPLETE_RE = re.compile(r"^(.+)_complete$")


def _discover(directory: Path, types: Dict[str, str]) -> Iterator[UnitOfWork]:
    if not directory.is_dir():
        logger.info("Directory not found: %s", directory)
        return
    for path in sorted(p for p in directory.iterdir() if p.is_file() and not p.name.startswith(".")):
        kind = types.get(path.suffix.lower())
        if kind is None:
            continue
        yield UnitOfWork(
            name=path.name,
            source_path=path,
            kind=kind,
            fingerprint=file_fingerprint(path),
        )


def header_instruments(columns: Sequence[str]) -> List[str]:
    """Instrument names announced by ``<name>_complete`` columns, in order."""
    found: List[str] = []
    for col in columns:
        m = _COMPLETE_RE.match(str(col).strip())
        if m and m.group(1) not in IGNORED_FORMS and m.group(1) not in found:
            found.append(m.group(1))
    return found


def is_excluded(filename: str, patterns: Sequence[str]) -> bool:
    """Exact name or shell-style pattern match against ``exclude_data_files``."""
    return any(filename == p or fnmatch.fnmatch(filename, p) for p in patterns)


# --------------------------------------------------------------------------- #
# Step 1 – instrument installation                                            #
# --------------------------------------------------------------------------- #
class DataDictionarySource:
    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def discover(self) -> Iterator[UnitOfWork]:
        return _discover(self.directory, DD_TYPES)


class InstrumentInstallHandler(SyncHandler):
    """Install one data-dictionary file; duplicates count as *already exists*."""

    def __init__(self, client: LorisClient) -> None:
        self.client = client
        self.installed = 0

    def validate(self, unit: UnitOfWork) -> None:
        if unit.source_path is None or unit.source_path.stat().st_size == 0:
            raise ValidationError("empty data dictionary")

    def apply(self, unit: UnitOfWork, identities: Dict[ExternalIdentifier, IdentityMapping]) -> RunOutcome:
        result = self.client.install_instrument(unit.source_path)
        if result.is_conflict or looks_already_installed(result.message):
            return RunOutcome.already_exists(f"{unit.kind} instrument already installed")
        if not result.success:
            return RunOutcome.failed(result.errors[0] if result.errors else result.message)
        self.installed += 1
        return RunOutcome.success(f"installed as {unit.kind}")


# --------------------------------------------------------------------------- #
# Step 2 – data upload                                                        #
# --------------------------------------------------------------------------- #
class ClinicalDataSource:
    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def discover(self) -> Iterator[UnitOfWork]:
        return _discover(self.directory, DATA_FORMATS)


class ClinicalUploadHandler(SyncHandler):
    """Upload one clinical data file and archive it on success.

    Args:
        client: LORIS client.
        resolver: Receives the ``idMapping`` of each upload.
        exclude: ``exclude_data_files`` patterns from ``project.json``.
        archive_dir: ``processed/clinical`` directory of the project.
        context: Current run (archive folder date and name clashes).
    """

    def __init__(
        self,
        client: LorisClient,
        resolver: IdentityResolver,
        *,
        exclude: Sequence[str],
        archive_dir: Path,
        context: RunContext,
    ) -> None:
        self.client = client
        self.resolver = resolver
        self.exclude = list(exclude)
        self.archive_dir = archive_dir
        self.context = context

    def validate(self, unit: UnitOfWork) -> None:
        if is_excluded(unit.name, self.exclude):
            raise UnitSkipped("excluded")
        try:
            df = read_table(unit.source_path)
        except ValueError as exc:
            raise ValidationError("unreadable file", str(exc)) from exc
        if len(df.index) == 0:
            raise UnitSkipped("empty file")
        unit.attributes["rows"] = len(df.index)
        unit.attributes["header_instruments"] = header_instruments(df.columns)

    def instruments_for(self, unit: UnitOfWork) -> List[str]:
        """Resolve the instruments *unit* should be uploaded to (remote checks)."""
        stem = unit.source_path.stem
        if self.client.instrument_exists(stem):
            return [stem]
        return [i for i in unit.attributes.get("header_instruments", []) if self.client.instrument_exists(i)]

    def apply(self, unit: UnitOfWork, identities: Dict[ExternalIdentifier, IdentityMapping]) -> RunOutcome:
        instruments = self.instruments_for(unit)
        if not instruments:
            return RunOutcome.failed("no matching instruments")
        logger.info("%s: %d row(s) → %s", unit.name, unit.attributes.get("rows", 0), ", ".join(instruments))

        result = self.client.upload_instrument_data(unit.source_path, instruments)
        if result.is_conflict:
            return RunOutcome.already_exists(result.message)
        if not result.success:
            for err in result.errors[1:]:
                logger.error("%s: %s", unit.name, err)
            return RunOutcome.failed(result.errors[0] if result.errors else result.message)

        for ext_id, cand_id in result.id_mapping:
            self.resolver.remember(ext_id, cand_id, ResolutionSource.NEWLY_CREATED)

        try:
            target = archive_copy(unit.source_path, self.archive_dir, self.context)
            logger.debug("Archived %s to %s", unit.name, target)
        except OSError as exc:
            # The upload itself succeeded; only the local copy is missing.
            logger.error("Could not archive %s: %s", unit.name, exc)
        return RunOutcome.success(f"{', '.join(instruments)}: {result.summary()}")


# --------------------------------------------------------------------------- #
# Orchestration                                                               #
# --------------------------------------------------------------------------- #
def run_clinical(
    client: LorisClient,
    project: ProjectConfig,
    context: RunContext,
    *,
    resolver: Optional[IdentityResolver] = None,
) -> List[RunReport]:
    """Install instruments then upload data files for *project*.

    Returns:
        ``[install_report, upload_report]``.
    """
    root = project.root
    name = project.name
    resolver = resolver or IdentityResolver(client)

    dd_dir = root / DD_SUBDIR
    install_report = RunReport(f"Instrument installation – {name}")
    install_handler = InstrumentInstallHandler(client)
    SyncEngine(
        install_handler,
        ProcessedTracker(dd_dir / INSTALL_TRACKER),
        context,
    ).run(DataDictionarySource(dd_dir).discover(), install_report)
    if install_handler.installed:
        client.forget_instruments()

    data_dir = root / DATA_SUBDIR
    archive_dir = root / ARCHIVE_SUBDIR
    upload_report = RunReport(f"Clinical data upload – {name}")
    upload_handler = ClinicalUploadHandler(
        client,
        resolver,
        exclude=project.exclude_data_files,
        archive_dir=archive_dir,
        context=context,
    )
    SyncEngine(
        upload_handler,
        ProcessedTracker(archive_dir / UPLOAD_TRACKER),
        context,
        resolver,
    ).run(ClinicalDataSource(data_dir).discover(), upload_report)

    return [install_report, upload_report]
