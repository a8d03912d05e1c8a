"""
``participants.tsv`` helpers shared by the BIDS pipelines.

Column conventions follow what study teams actually put into their
participant tables: the external identifier may live in any of
:data:`EXTERNAL_ID_COLUMNS`, sex is spelled ``m``/``male``/``f``/``female``
in any case, and the date of birth in any of :data:`DOB_COLUMNS`.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from loris_ingest.utils.tables import is_missing, read_table

log = logging.getLogger(__name__)

PARTICIPANTS_FILE = "participants.tsv"

EXTERNAL_ID_COLUMNS: Tuple[str, ...] = (
    "external_id", "ExternalID", "externalid",
    "study_id", "StudyID", "studyid",
    "pscid", "PSCID",
    "ext_study_id", "ExtStudyID",
)
SEX_COLUMNS = ("sex", "Sex", "gender")
SITE_COLUMNS = ("site", "Site")
PROJECT_COLUMNS = ("project", "Project")
DOB_COLUMNS = ("dob", "DoB", "date_of_birth")

_SEX = {"m": "Male", "male": "Male", "f": "Female", "female": "Female"}


def first_value(row: Mapping[str, object], columns: Sequence[str]) -> Optional[str]:
    """Return the first non-missing value among *columns* of *row*."""
    for col in columns:
        value = row.get(col)
        if not is_missing(value):
            return str(value).strip()
    return None


def external_id_of(row: Mapping[str, object], columns: Sequence[str] = EXTERNAL_ID_COLUMNS) -> Optional[str]:
    return first_value(row, columns)


def normalize_sex(value: Optional[str]) -> Optional[str]:
    """Map the usual spellings to ``Male``/``Female``; anything else is ``None``."""
    if value is None:
        return None
    return _SEX.get(str(value).strip().lower())


def load_participants(bids_dir: Path) -> pd.DataFrame:
    """Read ``participants.tsv`` of *bids_dir*.

    Raises:
        FileNotFoundError: When the file does not exist.
        ValueError: When it has no ``participant_id`` column.
    """
    path = Path(bids_dir) / PARTICIPANTS_FILE
    if not path.exists():
        raise FileNotFoundError(f"{PARTICIPANTS_FILE} not found in {bids_dir}")
    df = read_table(path)
    if len(df.columns) and "participant_id" not in df.columns:
        raise ValueError(f"{path} has no participant_id column")
    log.info("Parsed %d participant(s) from %s", len(df.index), path)
    return df


def participant_rows(df: pd.DataFrame) -> List[Dict[str, str]]:
    return [{str(k): ("" if v is None else str(v)) for k, v in rec.items()} for rec in df.to_dict("records")]


def subject_dirs(bids_dir: Path) -> List[str]:
    """Sorted ``sub-*`` directory names directly under *bids_dir*."""
    return sorted(p.name for p in Path(bids_dir).glob("sub-*") if p.is_dir())


def cross_reference(bids_dir: Path, participant_ids: Sequence[str]) -> Tuple[List[str], List[str]]:
    """Return ``(orphans, missing)``.

    *orphans* are ``sub-*`` folders absent from ``participants.tsv``;
    *missing* are listed participants without a folder.
    """
    dirs = subject_dirs(bids_dir)
    listed = {p for p in participant_ids if p}
    orphans = [d for d in dirs if d not in listed]
    missing = [p for p in participant_ids if p and p not in set(dirs)]
    for d in orphans:
        log.warning("Orphan directory %s: folder exists but is not listed in %s", d, PARTICIPANTS_FILE)
    for p in missing:
        log.warning("Missing directory %s: listed in %s but no folder exists", p, PARTICIPANTS_FILE)
    return orphans, missing
