"""
BIDS participant synchronisation.

Every row of ``participants.tsv`` becomes one unit.  A row whose external ID
the mapper already knows needs nothing (``already exists``); otherwise a
candidate is created with ``PSCID = external ID`` and the external ID is
linked to it under the project's ProjectExternalID.

Project resolution per row: ``project`` column → ``--project`` → the
``project`` field of ``project.json``.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

import pandas as pd

from loris_ingest.api.loris import LorisClient
from loris_ingest.config.loader import project_external_id
from loris_ingest.config.schema import AppConfig, ProjectConfig
from loris_ingest.core.engine import SyncEngine, SyncHandler
from loris_ingest.core.report import RunReport
from loris_ingest.core.resolver import IdentityResolver
from loris_ingest.core.tracker import ProcessedTracker
from loris_ingest.errors import ConflictError, ValidationError
from loris_ingest.models import (
    ExternalIdentifier,
    IdentityMapping,
    InternalIdentifier,
    RunContext,
    RunOutcome,
    UnitOfWork,
)

from .base import bids_state_dir
from .bids import (
    DOB_COLUMNS,
    PROJECT_COLUMNS,
    SEX_COLUMNS,
    SITE_COLUMNS,
    cross_reference,
    external_id_of,
    first_value,
    load_participants,
    normalize_sex,
    participant_rows,
)

logger = logging.getLogger(__name__)

TRACKER_NAME = "participant_sync_processed.json"


def _row_fingerprint(row: Dict[str, str]) -> str:
    text = "\t".join(f"{k}={row[k]}" for k in sorted(row))
    return hashlib.sha1(text.encode("utf-8")).hexdigest()[:16]


class ParticipantSource:
    """One unit per ``participants.tsv`` row."""

    def __init__(
        self,
        bids_dir: Path,
        df: pd.DataFrame,
        *,
        project_override: Optional[str] = None,
        project_default: Optional[str] = None,
    ) -> None:
        self.bids_dir = Path(bids_dir)
        self.df = df
        self.project_override = project_override
        self.project_default = project_default

    def discover(self) -> Iterator[UnitOfWork]:
        for line, row in enumerate(participant_rows(self.df), start=2):
            pid = (row.get("participant_id") or "").strip() or f"{self.bids_dir.name}:row{line}"
            ext = external_id_of(row)
            sex_raw = first_value(row, SEX_COLUMNS)
            yield UnitOfWork(
                name=pid,
                source_path=self.bids_dir / pid,
                external_ids=[ext] if ext else [],
                kind="participant",
                fingerprint=_row_fingerprint(row),
                attributes={
                    "sex_raw": sex_raw,
                    "sex": normalize_sex(sex_raw),
                    "site": first_value(row, SITE_COLUMNS),
                    "project": first_value(row, PROJECT_COLUMNS) or self.project_override or self.project_default,
                    "dob": first_value(row, DOB_COLUMNS),
                },
            )


class ParticipantSyncHandler(SyncHandler):
    """Create missing candidates and link their external IDs.

    Args:
        client: LORIS client.
        external_project_id: Maps a LORIS project name to its
            ProjectExternalID (``None`` when unmapped).
    """

    skip_existing = True

    def __init__(self, client: LorisClient, external_project_id: Callable[[str], Optional[str]]) -> None:
        self.client = client
        self.external_project_id = external_project_id

    def validate(self, unit: UnitOfWork) -> None:
        attrs = unit.attributes
        if attrs.get("sex_raw") and not attrs.get("sex"):
            raise ValidationError("invalid sex value", str(attrs["sex_raw"]))
        missing = [
            name
            for name, present in (
                ("external_id", unit.external_id),
                ("sex", attrs.get("sex")),
                ("site", attrs.get("site")),
                ("project", attrs.get("project")),
                ("dob", attrs.get("dob")),
            )
            if not present
        ]
        if missing:
            raise ValidationError("missing required field", ", ".join(missing))
        pei = self.external_project_id(attrs["project"])
        if not pei:
            raise ValidationError("no ProjectExternalID mapping", attrs["project"])
        attrs["project_external_id"] = pei

    def create_subject(self, unit: UnitOfWork, external_id: ExternalIdentifier) -> InternalIdentifier:
        attrs = unit.attributes
        return self.client.create_candidate(
            pscid=external_id,
            project=attrs["project"],
            site=attrs["site"],
            sex=attrs["sex"],
            dob=attrs.get("dob"),
        )

    def find_existing(self, unit: UnitOfWork, external_id: ExternalIdentifier) -> Optional[InternalIdentifier]:
        return self.client.find_candidate_by_pscid(external_id)

    def apply(self, unit: UnitOfWork, identities: Dict[ExternalIdentifier, IdentityMapping]) -> RunOutcome:
        ext = unit.external_id
        cand_id = identities[ext].internal_id
        try:
            self.client.link_external_id(cand_id, unit.attributes["project_external_id"], ext)
        except ConflictError:
            return RunOutcome.success(f"CandID {cand_id}; {ext} was already linked")
        return RunOutcome.success(f"CandID {cand_id} ({identities[ext].source.value}); {ext} linked")


def run_participants(
    client: LorisClient,
    cfg: AppConfig,
    bids_dir: Path,
    context: RunContext,
    *,
    project: Optional[ProjectConfig] = None,
    project_override: Optional[str] = None,
) -> List[RunReport]:
    """Synchronise every participant of *bids_dir*; return ``[report]``.

    Raises:
        FileNotFoundError: No ``participants.tsv``.
        ValueError: ``participants.tsv`` without ``participant_id`` column.
    """
    bids_dir = Path(bids_dir)
    df = load_participants(bids_dir)
    name = project.name if project else bids_dir.name
    report = RunReport(f"BIDS participant sync – {name}")

    ids = [str(p).strip() for p in df["participant_id"]] if "participant_id" in df.columns else []
    orphans, missing = cross_reference(bids_dir, ids)
    if orphans:
        report.note(f"{len(orphans)} orphan director{'y' if len(orphans) == 1 else 'ies'} "
                    f"not in participants.tsv: {', '.join(orphans)}")
    if missing:
        report.note(f"{len(missing)} participant(s) without a folder: {', '.join(missing)}")

    source = ParticipantSource(
        bids_dir,
        df,
        project_override=project_override,
        project_default=project.project if project else None,
    )
    handler = ParticipantSyncHandler(
        client, lambda proj: project_external_id(cfg, project, [proj])
    )
    engine = SyncEngine(
        handler,
        ProcessedTracker(bids_state_dir(bids_dir) / TRACKER_NAME),
        context,
        IdentityResolver(client),
    )
    engine.run(source.discover(), report)
    return [report]
