"""
The idempotent synchronisation loop shared by every pipeline.

For each discovered :class:`~loris_ingest.models.UnitOfWork` the engine runs:

1. **Skip check** – units recorded by the tracker are skipped without any
   network traffic (bypassed with ``force``).
2. **Local validation** – delegated to the handler; a
   :class:`~loris_ingest.errors.ValidationError` fails the unit, a
   :class:`~loris_ingest.errors.UnitSkipped` skips it.  Dry-runs stop here.
3. **Identity resolution** – each external identifier is resolved; an
   existing subject either ends an identity-sync unit (``already exists``) or
   is reused, a missing one is created.  A 409 on creation is a lost race:
   the identifier is resolved again and handled as an existing subject.
4. **Mutation** – the handler performs the side effect; success (and
   *already exists*) is written to the tracker.

Every outcome is logged and recorded in the run's
:class:`~loris_ingest.core.report.RunReport`.  No exception escapes a unit.

Pipelines plug in through :class:`SyncHandler` and discover their units
through a :class:`UnitSource`.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, List, Optional, Protocol, Tuple

import requests

from loris_ingest.core.report import RunReport
from loris_ingest.core.resolver import IdentityResolver
from loris_ingest.core.tracker import TrackerStore
from loris_ingest.errors import (
    ConflictError,
    LorisIngestError,
    RemoteError,
    UnitSkipped,
    ValidationError,
)
from loris_ingest.models import (
    ALREADY_PROCESSED,
    DRY_RUN,
    ExternalIdentifier,
    IdentityMapping,
    InternalIdentifier,
    ResolutionSource,
    RunContext,
    RunOutcome,
    UnitOfWork,
)

logger = logging.getLogger(__name__)


class UnitSource(Protocol):
    """Discovers the units of one pipeline run in a deterministic order."""

    def discover(self) -> Iterator[UnitOfWork]: ...


class SyncHandler:
    """Pipeline-specific steps invoked by :class:`SyncEngine`.

    Subclasses override :meth:`validate` and :meth:`apply`; identity flows
    also override :meth:`create_subject` and optionally :meth:`find_existing`.

    Attributes:
        skip_existing: ``True`` for pure identity-sync flows, where finding the
            subject remotely means there is nothing left to do.
        create_missing: Whether an unresolved identifier triggers creation.
        missing_reason: Skip reason used when ``create_missing`` is ``False``.
    """

    skip_existing: bool = False
    create_missing: bool = True
    missing_reason: str = "unmapped external identifier"

    def validate(self, unit: UnitOfWork) -> None:
        """Raise :class:`ValidationError` / :class:`UnitSkipped` for unusable units."""

    def create_subject(self, unit: UnitOfWork, external_id: ExternalIdentifier) -> InternalIdentifier:
        """Create the remote subject for *external_id*; raise :class:`ConflictError` on 409."""
        raise NotImplementedError(f"{type(self).__name__} cannot create subjects")

    def find_existing(
        self, unit: UnitOfWork, external_id: ExternalIdentifier
    ) -> Optional[InternalIdentifier]:
        """Locate a subject the lookup service does not know about (after a 409)."""
        return None

    def apply(self, unit: UnitOfWork, identities: Dict[ExternalIdentifier, IdentityMapping]) -> RunOutcome:
        """Perform the unit's side effect and return its outcome."""
        raise NotImplementedError


class SyncEngine:
    """Drive a :class:`SyncHandler` over a sequence of units.

    Args:
        handler: Pipeline-specific steps.
        tracker: Persisted idempotence ledger for this pipeline's namespace.
        context: Run timestamp and *dry-run* / *force* flags.
        resolver: Identity resolver; required only when units carry
            external identifiers.
    """

    def __init__(
        self,
        handler: SyncHandler,
        tracker: TrackerStore,
        context: RunContext,
        resolver: Optional[IdentityResolver] = None,
    ) -> None:
        self.handler = handler
        self.tracker = tracker
        self.context = context
        self.resolver = resolver
        self._pending: List[ExternalIdentifier] = []

    # ------------------------------------------------------------------ #
    # Steps 1-2: local checks
    # ------------------------------------------------------------------ #
    def _precheck(self, unit: UnitOfWork) -> Optional[RunOutcome]:
        """Return a terminal outcome decided locally, or ``None`` to continue."""
        if not self.context.force and self.tracker.is_processed(unit.name, unit.fingerprint):
            return RunOutcome.skipped(ALREADY_PROCESSED)
        try:
            self.handler.validate(unit)
        except UnitSkipped as exc:
            return RunOutcome.skipped(exc.reason)
        except ValidationError as exc:
            return RunOutcome.failed(str(exc), exc.detail)
        except Exception as exc:  # noqa: BLE001 - a unit must never abort the run
            logger.exception("Unexpected error while validating %s", unit.name)
            return RunOutcome.failed(f"unexpected error: {exc}")
        if self.context.dry_run:
            return RunOutcome.skipped(DRY_RUN)
        return None

    # ------------------------------------------------------------------ #
    # Step 3: identity
    # ------------------------------------------------------------------ #
    def _create(self, unit: UnitOfWork, external_id: ExternalIdentifier) -> Tuple[IdentityMapping, bool]:
        """Create the subject; return the mapping and whether the lookup service knew it."""
        if self.resolver is None:
            raise LorisIngestError("subject creation requires an identity resolver")
        try:
            internal = self.handler.create_subject(unit, external_id)
        except ConflictError:
            logger.info("%s already exists remotely; resolving again", external_id)
            mapping = self.resolver.resolve(external_id, refresh=True)
            if mapping is not None:
                return mapping, True
            internal = self.handler.find_existing(unit, external_id)
            if not internal:
                raise RemoteError("conflict on creation but existing subject not found", 409)
            logger.info("Found %s as subject %s in the candidate listing", external_id, internal)
            return self.resolver.remember(external_id, internal, ResolutionSource.CANDIDATE_LISTING), False
        logger.info("Created subject %s for %s", internal, external_id)
        return self.resolver.remember(external_id, internal, ResolutionSource.NEWLY_CREATED), False

    def _complete(self, unit: UnitOfWork) -> RunOutcome:
        identities: Dict[ExternalIdentifier, IdentityMapping] = {}
        if unit.external_ids and self.resolver is None:
            raise LorisIngestError("unit carries external identifiers but no resolver is configured")
        if unit.external_ids and self._pending:
            # first resolution of the run: look up every pending identifier at once
            pending, self._pending = self._pending, []
            self.resolver.prefetch(pending)
        for external_id in unit.external_ids:
            mapping = self.resolver.resolve(external_id)
            known = mapping is not None
            if mapping is None:
                if not self.handler.create_missing:
                    return RunOutcome.skipped(self.handler.missing_reason)
                mapping, known = self._create(unit, external_id)
            if known and self.handler.skip_existing:
                return RunOutcome.already_exists(f"{external_id} → {mapping.internal_id}")
            identities[external_id] = mapping
        return self.handler.apply(unit, identities)

    # ------------------------------------------------------------------ #
    # Outcome bookkeeping
    # ------------------------------------------------------------------ #
    def _guarded(self, unit: UnitOfWork) -> RunOutcome:
        try:
            return self._complete(unit)
        except UnitSkipped as exc:
            return RunOutcome.skipped(exc.reason)
        except ValidationError as exc:
            return RunOutcome.failed(str(exc), exc.detail)
        except ConflictError as exc:
            return RunOutcome.already_exists(str(exc))
        except RemoteError as exc:
            return RunOutcome.failed(str(exc))
        except requests.RequestException as exc:
            return RunOutcome.failed(f"network error: {type(exc).__name__}")
        except Exception as exc:  # noqa: BLE001 - a unit must never abort the run
            logger.exception("Unexpected error while processing %s", unit.name)
            return RunOutcome.failed(f"unexpected error: {exc}")

    def _finish(self, unit: UnitOfWork, outcome: RunOutcome, report: RunReport) -> RunOutcome:
        status = outcome.tracker_status
        if status and not self.context.dry_run:
            self.tracker.mark_processed(unit.name, status, outcome.detail, unit.fingerprint)

        suffix = f" – {outcome.detail}" if outcome.detail else ""
        if outcome.is_failed:
            logger.error("%s: %s%s", unit.name, outcome, suffix)
        else:
            logger.info("%s: %s%s", unit.name, outcome, suffix)
        report.record(unit.name, outcome)
        return outcome

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def process(self, unit: UnitOfWork, report: RunReport) -> RunOutcome:
        """Run all steps for a single *unit* and record the outcome in *report*."""
        outcome = self._precheck(unit)
        if outcome is None:
            outcome = self._guarded(unit)
        return self._finish(unit, outcome, report)

    def run(self, units: Iterable[UnitOfWork], report: Optional[RunReport] = None) -> RunReport:
        """Process *units* in order and return the (possibly supplied) report.

        Each unit runs through every step before the next one starts.  The
        identifiers of units the tracker does not already cover are collected
        up front and resolved in batched lookups when the first unit reaches
        identity resolution.
        """
        report = report if report is not None else RunReport()
        units = list(units)
        if self.resolver is not None and not self.context.dry_run:
            self._pending = [
                ext_id
                for unit in units
                if self.context.force or not self.tracker.is_processed(unit.name, unit.fingerprint)
                for ext_id in unit.external_ids
            ]
        try:
            for unit in units:
                self.process(unit, report)
        finally:
            self._pending = []
        return report
