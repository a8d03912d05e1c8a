"""
BIDS reidentification: external study IDs → LORIS PSCIDs.

The source dataset is left untouched.  For every participant whose external
ID maps to a PSCID, ``sub-<label>/`` is copied into the target dataset as
``sub-<PSCID>/``; the old label is rewritten in file names and inside text
sidecars (``.json``, ``.tsv``, ``.txt``).  After the subjects, the target gets
a rewritten ``participants.tsv`` and copies of the top-level dataset files,
with a ``GeneratedBy`` entry appended to ``dataset_description.json``.

Units are tracked in ``<target>/code/loris_ingest`` so a rerun only copies
participants that were not handled yet.  ``--force`` re-copies everything,
replacing existing subject folders.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
from pathlib import Path
from typing import Dict, Iterator, List, Mapping

import pandas as pd

from loris_ingest import __version__
from loris_ingest.api.loris import LorisClient
from loris_ingest.core.engine import SyncEngine, SyncHandler
from loris_ingest.core.report import RunReport
from loris_ingest.core.resolver import IdentityResolver
from loris_ingest.core.tracker import ProcessedTracker
from loris_ingest.errors import UnitSkipped, ValidationError
from loris_ingest.models import (
    ExternalIdentifier,
    IdentityMapping,
    RunContext,
    RunOutcome,
    UnitOfWork,
)
from loris_ingest.utils.tables import read_table, write_tsv

from .base import bids_state_dir
from .bids import PARTICIPANTS_FILE, external_id_of, first_value, load_participants, participant_rows

logger = logging.getLogger(__name__)

TRACKER_NAME = "reidentify_processed.json"

#: The PSCID columns are the *target* of the mapping, not a source.
SOURCE_ID_COLUMNS = (
    "external_id", "ExternalID", "externalid",
    "study_id", "StudyID", "studyid",
    "ext_study_id", "ExtStudyID",
)
DATASET_FILES = (
    "dataset_description.json",
    "README", "README.md", "CHANGES", "LICENSE",
    ".bidsignore", "participants.json",
)
TEXT_SUFFIXES = frozenset({".json", ".tsv", ".txt"})


def generatedby_entry() -> dict:
    """Return metadata describing this tool for ``GeneratedBy`` fields."""
    return {
        "Name": "loris-ingest reidentifier",
        "Version": __version__,
        "Description": "Reidentified from external study IDs to LORIS PSCIDs",
    }


def _label_pattern(old: str) -> re.Pattern:
    # sub-EXT01 must not match inside sub-EXT010
    return re.compile(re.escape(old) + r"(?![A-Za-z0-9])")


def copy_subject(src: Path, dest: Path, old: str, new: str) -> int:
    """Copy *src* to *dest*, renaming *old* → *new* in names and text sidecars.

    Returns:
        Number of files written.
    """
    pattern = _label_pattern(old)
    written = 0
    dest.mkdir(parents=True, exist_ok=True)
    for path in sorted(src.rglob("*")):
        rel = Path(*[pattern.sub(new, part) for part in path.relative_to(src).parts])
        target = dest / rel
        if path.is_dir():
            target.mkdir(parents=True, exist_ok=True)
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        if path.suffix.lower() in TEXT_SUFFIXES:
            text = path.read_text(encoding="utf-8", errors="surrogateescape")
            target.write_text(pattern.sub(new, text), encoding="utf-8", errors="surrogateescape")
        else:
            shutil.copy2(path, target)
        written += 1
    return written


class ReidentifySource:
    """One unit per ``participants.tsv`` row of the source dataset."""

    def __init__(self, source_dir: Path, df: pd.DataFrame) -> None:
        self.source_dir = Path(source_dir)
        self.df = df

    def discover(self) -> Iterator[UnitOfWork]:
        for row in participant_rows(self.df):
            pid = (row.get("participant_id") or "").strip()
            if not pid:
                continue
            ext = external_id_of(row, SOURCE_ID_COLUMNS)
            yield UnitOfWork(
                name=pid,
                source_path=self.source_dir / pid,
                external_ids=[ext] if ext else [],
                kind="bids_subject",
            )


class ReidentifyHandler(SyncHandler):
    """Copy one subject folder under its PSCID."""

    create_missing = False
    missing_reason = "unmapped external identifier"

    def __init__(self, target_dir: Path, context: RunContext) -> None:
        self.target_dir = Path(target_dir)
        self.context = context

    def validate(self, unit: UnitOfWork) -> None:
        if not unit.external_ids:
            raise ValidationError("missing required field", "external_id")
        if not unit.source_path.is_dir():
            raise UnitSkipped("no subject directory")

    def apply(self, unit: UnitOfWork, identities: Dict[ExternalIdentifier, IdentityMapping]) -> RunOutcome:
        pscid = identities[unit.external_id].internal_id
        new_label = f"sub-{pscid}"
        dest = self.target_dir / new_label
        if dest.exists():
            if not self.context.force:
                return RunOutcome.already_exists(f"{new_label} present in target")
            shutil.rmtree(dest)
        count = copy_subject(unit.source_path, dest, unit.name, new_label)
        return RunOutcome.success(f"{unit.name} → {new_label} ({count} files)")


# --------------------------------------------------------------------------- #
# Dataset-level files                                                         #
# --------------------------------------------------------------------------- #
def previous_mapping(target: Path) -> Dict[str, str]:
    """External ID → PSCID pairs already written to the target ``participants.tsv``."""
    path = Path(target) / PARTICIPANTS_FILE
    if not path.exists():
        return {}
    mapping: Dict[str, str] = {}
    for row in participant_rows(read_table(path)):
        ext = external_id_of(row, SOURCE_ID_COLUMNS)
        pscid = first_value(row, ("PSCID",))
        if ext and pscid:
            mapping[ext] = pscid
    return mapping


def write_participants(df: pd.DataFrame, mapping: Mapping[str, str], target: Path) -> int:
    """Write the target ``participants.tsv`` for mapped rows; return the row count.

    ``participant_id`` becomes ``sub-<PSCID>`` and a ``PSCID`` column is
    inserted right after it.
    """
    rows = []
    for row in participant_rows(df):
        ext = external_id_of(row, SOURCE_ID_COLUMNS)
        pscid = mapping.get(ext) if ext else None
        if not pscid:
            continue
        row = dict(row)
        row["participant_id"] = f"sub-{pscid}"
        row["PSCID"] = pscid
        rows.append(row)

    columns = [c for c in df.columns if c != "PSCID"]
    columns.insert(1 if "participant_id" in columns else 0, "PSCID")
    write_tsv(pd.DataFrame(rows, columns=columns), target / PARTICIPANTS_FILE)
    return len(rows)


def copy_dataset_files(source: Path, target: Path) -> List[str]:
    """Copy top-level dataset files and task sidecars; stamp ``GeneratedBy``."""
    copied: List[str] = []
    names = list(DATASET_FILES) + sorted(p.name for p in source.glob("task-*.json"))
    for name in names:
        src = source / name
        if not src.is_file():
            continue
        shutil.copy2(src, target / name)
        copied.append(name)

    desc = target / "dataset_description.json"
    if desc.exists():
        try:
            data = json.loads(desc.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.warning("Leaving %s unchanged: %s", desc, exc)
            return copied
        if data.get("Name") and "(LORIS Reidentified)" not in data["Name"]:
            data["Name"] = f"{data['Name']} (LORIS Reidentified)"
        generated = [g for g in data.get("GeneratedBy", []) if g.get("Name") != generatedby_entry()["Name"]]
        data["GeneratedBy"] = generated + [generatedby_entry()]
        desc.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    return copied


def run_reidentify(
    client: LorisClient,
    source_dir: Path,
    target_dir: Path,
    context: RunContext,
    *,
    title: str = "",
) -> List[RunReport]:
    """Reidentify *source_dir* into *target_dir*; return ``[report]``.

    Raises:
        FileNotFoundError: No ``participants.tsv`` in *source_dir*.
        ValueError: *target_dir* equals *source_dir*, or the table lacks
            ``participant_id``.
    """
    source_dir = Path(source_dir).resolve()
    target_dir = Path(target_dir).resolve()
    if source_dir == target_dir:
        raise ValueError("target directory must differ from the source dataset")

    df = load_participants(source_dir)
    report = RunReport(title or f"BIDS reidentification – {source_dir.name}")
    resolver = IdentityResolver(client)
    handler = ReidentifyHandler(target_dir, context)

    if not context.dry_run:
        target_dir.mkdir(parents=True, exist_ok=True)
    engine = SyncEngine(
        handler,
        ProcessedTracker(bids_state_dir(target_dir) / TRACKER_NAME),
        context,
        resolver,
    )
    engine.run(ReidentifySource(source_dir, df).discover(), report)

    if context.dry_run:
        return [report]

    resolved = resolver.resolve_many(
        ext for ext in (external_id_of(r, SOURCE_ID_COLUMNS) for r in participant_rows(df)) if ext
    )
    # a lookup that degraded to not-found must not drop a subject written earlier
    mapping = previous_mapping(target_dir)
    mapping.update({ext: m.internal_id for ext, m in resolved.items() if m is not None})
    n = write_participants(df, mapping, target_dir)
    copied = copy_dataset_files(source_dir, target_dir)
    logger.info("Wrote %s with %d participant(s); copied %s", PARTICIPANTS_FILE, n, ", ".join(copied) or "no dataset files")
    return [report]
