"""
Persisted idempotence ledger.

A :class:`ProcessedTracker` owns one JSON file that maps a unit's logical
name to the last terminal state it reached::

    {
      "20250101_STUDY01": {
        "status": "success",
        "detail": "imported",
        "timestamp": "2025-01-01T10:22:03",
        "fingerprint": "1048576:1735726923000000000"
      }
    }

The file is read in full once, when the tracker is created, and rewritten in
full after every :meth:`ProcessedTracker.mark_processed` call so the on-disk
view never lags behind memory.  Write failures are logged and swallowed: the
worst consequence is that a unit is redone on the next run, which the remote
conflict handling absorbs.

Concurrent runs against the same file are not supported.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Protocol

from loris_ingest.errors import PersistenceError

logger = logging.getLogger(__name__)

#: Statuses that make a unit count as processed.
TERMINAL_STATUSES = frozenset({"success", "already_exists"})


class TrackerStore(Protocol):
    """Interface the sync engine relies on; the JSON file is one implementation."""

    def is_processed(self, name: str, fingerprint: Optional[str] = None) -> bool: ...

    def mark_processed(
        self,
        name: str,
        status: str = "success",
        detail: str = "",
        fingerprint: Optional[str] = None,
    ) -> None: ...


class ProcessedTracker:
    """JSON-file backed :class:`TrackerStore`.

    Args:
        path: Location of the tracker file.  Parent directories are created
            on first write.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._records: Dict[str, Dict[str, str]] = self._load()

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #
    def _load(self) -> Dict[str, Dict[str, str]]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable tracker %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring tracker %s: top-level value is not an object", self.path)
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, dict)}

    def _write(self) -> None:
        """Rewrite the whole file; raise :class:`PersistenceError` on failure."""
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(self._records, indent=2, sort_keys=True), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as exc:
            raise PersistenceError(f"cannot write tracker {self.path}: {exc}") from exc

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def is_processed(self, name: str, fingerprint: Optional[str] = None) -> bool:
        """Return ``True`` when *name* previously reached a terminal state.

        A record whose stored fingerprint differs from *fingerprint* does not
        count: the source changed since it was handled.
        """
        record = self._records.get(name)
        if not record or record.get("status") not in TERMINAL_STATUSES:
            return False
        stored = record.get("fingerprint")
        if fingerprint and stored and stored != fingerprint:
            logger.debug("%s changed since it was processed (%s → %s)", name, stored, fingerprint)
            return False
        return True

    def mark_processed(
        self,
        name: str,
        status: str = "success",
        detail: str = "",
        fingerprint: Optional[str] = None,
    ) -> None:
        """Record *name* and rewrite the file.  Never raises."""
        record = {
            "status": status,
            "detail": detail,
            "timestamp": datetime.now().isoformat(timespec="seconds"),
        }
        if fingerprint:
            record["fingerprint"] = fingerprint
        self._records[name] = record
        try:
            self._write()
        except PersistenceError as exc:
            logger.error("%s – %s will be reprocessed on the next run", exc, name)

    def get(self, name: str) -> Optional[Dict[str, str]]:
        """Return the stored record for *name* (a copy) or ``None``."""
        record = self._records.get(name)
        return dict(record) if record else None

    def __contains__(self, name: object) -> bool:
        return name in self._records

    def __len__(self) -> int:
        return len(self._records)
