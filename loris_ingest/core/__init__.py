"""Identity resolution, idempotence tracking, sync loop and run reporting."""

from loris_ingest.core.engine import SyncEngine, SyncHandler, UnitSource
from loris_ingest.core.report import RunReport
from loris_ingest.core.resolver import IdentityResolver
from loris_ingest.core.tracker import ProcessedTracker, TrackerStore

__all__ = [
    "IdentityResolver",
    "ProcessedTracker",
    "RunReport",
    "SyncEngine",
    "SyncHandler",
    "TrackerStore",
    "UnitSource",
]
