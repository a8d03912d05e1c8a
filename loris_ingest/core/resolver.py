"""
Run-scoped resolution of external study identifiers to LORIS identifiers.

:class:`IdentityResolver` wraps a *lookup service* (in production
:meth:`loris_ingest.api.loris.LorisClient.map_external_ids`) and guarantees
that within one run each external identifier is looked up at most once.

Lookup strategy
---------------
1. Pending identifiers are sent in batches (one request, N rows back).
2. When a batch request fails for any reason (network, 5xx, malformed or
   short answer) each identifier of that batch is retried on its own.
3. When the single query fails too, the identifier resolves to *not found*.
   The failure is logged; downstream creation relies on LORIS answering
   HTTP 409 for identifiers it already knows.

The cache is never persisted: mappings must reflect the remote state of the
current run.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import requests

from loris_ingest.errors import RemoteError
from loris_ingest.models import (
    ExternalIdentifier,
    IdentityMapping,
    InternalIdentifier,
    ResolutionSource,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


class LookupService(Protocol):
    """Anything able to map external identifiers in submission order.

    Implementations return one ``(external_id, internal_id | None)`` pair per
    submitted identifier and raise :class:`~loris_ingest.errors.RemoteError`
    (or a :mod:`requests` exception) when the answer cannot be trusted.
    """

    def map_external_ids(
        self, external_ids: Sequence[ExternalIdentifier]
    ) -> List[Tuple[ExternalIdentifier, Optional[InternalIdentifier]]]: ...


class IdentityResolver:
    """Resolve external identifiers with a run-scoped cache.

    Args:
        lookup: Service used for cache misses.
        batch_size: Maximum number of identifiers per lookup request.
    """

    def __init__(self, lookup: LookupService, *, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self.lookup = lookup
        self.batch_size = max(1, batch_size)
        self._cache: Dict[ExternalIdentifier, Optional[IdentityMapping]] = {}

    # ------------------------------------------------------------------ #
    # Remote lookups
    # ------------------------------------------------------------------ #
    def _lookup_batch(self, batch: List[ExternalIdentifier]) -> None:
        try:
            rows = self.lookup.map_external_ids(batch)
        except (RemoteError, requests.RequestException) as exc:
            if len(batch) == 1:
                logger.warning("Lookup of %s failed, treating as not found: %s", batch[0], exc)
                self._cache[batch[0]] = None
                return
            logger.warning("Batch lookup of %d IDs failed (%s); retrying one by one", len(batch), exc)
            for ext_id in batch:
                self._lookup_batch([ext_id])
            return

        found = {ext: internal for ext, internal in rows if internal}
        for ext_id in batch:
            internal = found.get(ext_id)
            self._cache[ext_id] = (
                IdentityMapping(ext_id, internal, ResolutionSource.LOOKUP_SERVICE)
                if internal
                else None
            )
        logger.debug("Lookup resolved %d/%d IDs", sum(1 for e in batch if found.get(e)), len(batch))

    def prefetch(self, external_ids: Iterable[ExternalIdentifier], *, refresh: bool = False) -> None:
        """Look up every uncached identifier of *external_ids* in batches."""
        pending: List[ExternalIdentifier] = []
        for ext_id in external_ids:
            if not ext_id or ext_id in pending:
                continue
            if refresh or ext_id not in self._cache:
                pending.append(ext_id)
        for start in range(0, len(pending), self.batch_size):
            self._lookup_batch(pending[start : start + self.batch_size])

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def resolve(self, external_id: ExternalIdentifier, *, refresh: bool = False) -> Optional[IdentityMapping]:
        """Return the mapping for *external_id* or ``None`` when not found.

        Args:
            external_id: Identifier as found in the source data.
            refresh: Ignore the cache and query again (used after a 409).
        """
        if not refresh and external_id in self._cache:
            hit = self._cache[external_id]
            return hit.cached() if hit else None
        self._lookup_batch([external_id])
        return self._cache.get(external_id)

    def resolve_many(
        self, external_ids: Iterable[ExternalIdentifier]
    ) -> Dict[ExternalIdentifier, Optional[IdentityMapping]]:
        """Batch-resolve *external_ids* and return a mapping per identifier."""
        ids = list(external_ids)
        self.prefetch(ids)
        return {ext_id: self.resolve(ext_id) for ext_id in ids}

    def remember(
        self,
        external_id: ExternalIdentifier,
        internal_id: InternalIdentifier,
        source: ResolutionSource = ResolutionSource.NEWLY_CREATED,
    ) -> IdentityMapping:
        """Store a mapping learnt outside the lookup service (creation, upload)."""
        mapping = IdentityMapping(external_id, str(internal_id), source)
        self._cache[external_id] = mapping
        return mapping

    def __contains__(self, external_id: object) -> bool:
        return external_id in self._cache
