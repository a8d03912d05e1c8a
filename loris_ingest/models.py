"""
Domain-level data models shared by the API, core and pipeline layers.

The module provides:

* **Identifier aliases** (`ExternalIdentifier`, `InternalIdentifier`).
* **`IdentityMapping`** – one resolved external → internal pair tagged with
  the way it was obtained.
* **`UnitOfWork`** – one atomic item a pipeline hands to the sync engine
  (a data file, a DICOM study directory, a participant row …).
* **`RunOutcome`** – ``success`` / ``failed(reason)`` / ``skipped(reason)``.
* **`RunContext`** – run timestamp plus the *dry-run* and *force* flags,
  threaded explicitly through every pipeline call.
* **`UploadResult`** – the single normalised shape of every upload answer.

All objects are plain dataclasses; none of them perform I/O.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

ExternalIdentifier = str
InternalIdentifier = str

#: Reason used whenever the remote system already knows about a unit.
ALREADY_EXISTS = "already exists"
#: Reason used by the tracker check of the sync engine.
ALREADY_PROCESSED = "already processed"
#: Reason used when a dry-run stops after local validation.
DRY_RUN = "dry run"


# --------------------------------------------------------------------------- #
# 1 – Identity                                                                #
# --------------------------------------------------------------------------- #
class ResolutionSource(str, enum.Enum):
    """How an :class:`IdentityMapping` was obtained."""

    LOOKUP_SERVICE = "found_via_lookup_service"
    NEWLY_CREATED = "newly_created"
    LOCAL_CACHE = "found_via_local_cache"
    CANDIDATE_LISTING = "found_via_candidate_listing"


@dataclass(frozen=True)
class IdentityMapping:
    """One external identifier resolved to the identifier LORIS assigned."""

    external_id: ExternalIdentifier
    internal_id: InternalIdentifier
    source: ResolutionSource

    def cached(self) -> "IdentityMapping":
        """Return a copy tagged as served from the run-scoped cache."""
        return IdentityMapping(self.external_id, self.internal_id, ResolutionSource.LOCAL_CACHE)


# --------------------------------------------------------------------------- #
# 2 – Units of work and their outcomes                                        #
# --------------------------------------------------------------------------- #
@dataclass
class UnitOfWork:
    """An atomic item to synchronise.

    Attributes:
        name: Logical name; the key used by the processed tracker.
        source_path: File or directory the unit was discovered at.
        external_ids: External identifiers that need resolving before the
            unit's side effect can run.  Empty for units whose upload does
            its own subject matching (clinical files, DICOM studies).
        kind: Instrument / study kind (``LORIS_CSV``, ``BIDS_TSV``,
            ``dicom_study``, ``participant`` …).
        fingerprint: Cheap content fingerprint (size + mtime) or ``None``.
        attributes: Free-form pipeline data (row values, install type …).
    """

    name: str
    source_path: Optional[Path] = None
    external_ids: List[ExternalIdentifier] = field(default_factory=list)
    kind: str = ""
    fingerprint: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def external_id(self) -> Optional[ExternalIdentifier]:
        """First external identifier, or ``None`` when there is none."""
        return self.external_ids[0] if self.external_ids else None


def file_fingerprint(path: Path) -> Optional[str]:
    """Return ``"<size>:<mtime_ns>"`` for *path* or ``None`` when it is missing."""
    try:
        st = path.stat()
    except OSError:
        return None
    return f"{st.st_size}:{st.st_mtime_ns}"


class OutcomeStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RunOutcome:
    """Terminal state of one unit within one run.

    ``detail`` carries optional, human-readable extras (rows saved, new
    CandID …) that end up in the tracker record and the run log but never
    influence report grouping.
    """

    status: OutcomeStatus
    reason: str = ""
    detail: str = ""

    @classmethod
    def success(cls, detail: str = "") -> "RunOutcome":
        return cls(OutcomeStatus.SUCCESS, "", detail)

    @classmethod
    def failed(cls, reason: str, detail: str = "") -> "RunOutcome":
        return cls(OutcomeStatus.FAILED, reason, detail)

    @classmethod
    def skipped(cls, reason: str, detail: str = "") -> "RunOutcome":
        return cls(OutcomeStatus.SKIPPED, reason, detail)

    @classmethod
    def already_exists(cls, detail: str = "") -> "RunOutcome":
        return cls(OutcomeStatus.SKIPPED, ALREADY_EXISTS, detail)

    @property
    def is_success(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    @property
    def is_failed(self) -> bool:
        return self.status is OutcomeStatus.FAILED

    @property
    def is_skipped(self) -> bool:
        return self.status is OutcomeStatus.SKIPPED

    @property
    def tracker_status(self) -> Optional[str]:
        """Status to persist in the tracker, ``None`` when nothing is persisted.

        Only successes and *already exists* answers are terminal enough to
        be remembered across runs.
        """
        if self.is_success:
            return "success"
        if self.is_skipped and self.reason == ALREADY_EXISTS:
            return "already_exists"
        return None

    def __str__(self) -> str:
        if self.reason:
            return f"{self.status.value}({self.reason})"
        return self.status.value


# --------------------------------------------------------------------------- #
# 3 – Run context                                                             #
# --------------------------------------------------------------------------- #
@dataclass(frozen=True)
class RunContext:
    """Per-invocation settings handed to every pipeline and engine."""

    started_at: datetime
    dry_run: bool = False
    force: bool = False

    @classmethod
    def start(cls, *, dry_run: bool = False, force: bool = False) -> "RunContext":
        return cls(started_at=datetime.now(), dry_run=dry_run, force=force)

    @property
    def stamp(self) -> str:
        """Timestamp used in log and archive file names (``YYYY-MM-DD_HH-MM-SS``)."""
        return self.started_at.strftime("%Y-%m-%d_%H-%M-%S")


# --------------------------------------------------------------------------- #
# 4 – Upload results                                                          #
# --------------------------------------------------------------------------- #
@dataclass
class UploadResult:
    """Normalised answer of an upload / install / script endpoint.

    Attributes:
        success: Whether LORIS accepted the request.
        message: Human-readable message (``"OK"`` when LORIS sent none).
        status_code: HTTP status of the response.
        id_mapping: ``(ExtStudyID, CandID)`` pairs for candidates created by
            the upload.
        rows_saved: Parsed from ``"Saved N out of M"`` when present.
        rows_total: Parsed from ``"Saved N out of M"`` when present.
        errors: Individual error strings when LORIS returned a list.
        payload: Decoded JSON body, ``None`` for non-JSON answers.
    """

    success: bool
    message: str
    status_code: Optional[int] = None
    id_mapping: List[Tuple[str, str]] = field(default_factory=list)
    rows_saved: Optional[int] = None
    rows_total: Optional[int] = None
    errors: List[str] = field(default_factory=list)
    payload: Optional[Any] = None

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409

    def summary(self) -> str:
        """Short one-line description used as outcome detail."""
        if self.rows_saved is not None and self.rows_total is not None:
            text = f"{self.rows_saved}/{self.rows_total} rows saved"
        else:
            text = self.message
        if self.id_mapping:
            text += f", {len(self.id_mapping)} candidate(s) created"
        return text
