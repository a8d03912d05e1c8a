"""
Aggregation of per-unit outcomes into a reason-grouped run summary.

Outcomes are grouped first by category (success / failed / skipped) and,
inside *failed* and *skipped*, by the literal reason string::

    Success: 1 (visit1.csv)
    Failed: 3 (fileA.csv, fileB.csv [no matching instruments]; fileC.csv [HTTP 500])
    Skipped: 0

Counts always satisfy ``success + failed + skipped == total``.
"""

from __future__ import annotations

import html
from collections import OrderedDict
from typing import Dict, Iterable, List, Tuple

from loris_ingest.models import OutcomeStatus, RunOutcome

_ORDER = (OutcomeStatus.SUCCESS, OutcomeStatus.FAILED, OutcomeStatus.SKIPPED)


class RunReport:
    """Outcome accumulator for one pipeline invocation.

    Args:
        title: Heading used by :meth:`render` (e.g. ``"DICOM import – FDOPA"``).
    """

    def __init__(self, title: str = "Run report") -> None:
        self.title = title
        self._entries: List[Tuple[str, RunOutcome]] = []
        self.notes: List[str] = []

    # ------------------------------------------------------------------ #
    # Recording
    # ------------------------------------------------------------------ #
    def record(self, unit_name: str, outcome: RunOutcome) -> None:
        self._entries.append((unit_name, outcome))

    def note(self, message: str) -> None:
        """Attach a free-text remark (orphan directories, missing folders …)."""
        self.notes.append(message)

    @property
    def entries(self) -> List[Tuple[str, RunOutcome]]:
        return list(self._entries)

    def names(self, status: OutcomeStatus) -> List[str]:
        return [name for name, outcome in self._entries if outcome.status is status]

    # ------------------------------------------------------------------ #
    # Aggregates
    # ------------------------------------------------------------------ #
    def summary(self) -> Dict[str, Dict]:
        """Return ``{"counts": {...}, "by_reason": {"failed": {...}, "skipped": {...}}}``."""
        counts = {status.value: 0 for status in _ORDER}
        by_reason: Dict[str, Dict[str, List[str]]] = {
            OutcomeStatus.FAILED.value: OrderedDict(),
            OutcomeStatus.SKIPPED.value: OrderedDict(),
        }
        for name, outcome in self._entries:
            counts[outcome.status.value] += 1
            if outcome.status is not OutcomeStatus.SUCCESS:
                by_reason[outcome.status.value].setdefault(outcome.reason or "unspecified", []).append(name)
        counts["total"] = len(self._entries)
        return {"counts": counts, "by_reason": {k: dict(v) for k, v in by_reason.items()}}

    @property
    def counts(self) -> Dict[str, int]:
        return self.summary()["counts"]

    @property
    def has_failures(self) -> bool:
        return any(outcome.is_failed for _, outcome in self._entries)

    @property
    def exit_code(self) -> int:
        return 1 if self.has_failures else 0

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------ #
    # Rendering
    # ------------------------------------------------------------------ #
    def _lines(self) -> Iterable[str]:
        summary = self.summary()
        counts = summary["counts"]
        for status in _ORDER:
            label = status.value.capitalize()
            n = counts[status.value]
            if n == 0:
                yield f"{label}: 0"
            elif status is OutcomeStatus.SUCCESS:
                yield f"{label}: {n} ({', '.join(self.names(status))})"
            else:
                groups = "; ".join(
                    f"{', '.join(names)} [{reason}]"
                    for reason, names in summary["by_reason"][status.value].items()
                )
                yield f"{label}: {n} ({groups})"
        yield f"Total: {counts['total']}"

    def render(self) -> str:
        """Plain-text summary suitable for logs and e-mail bodies."""
        lines = [self.title, "=" * len(self.title), *self._lines()]
        if self.notes:
            lines.append("")
            lines.append("Notes:")
            lines.extend(f"  - {n}" for n in self.notes)
        return "\n".join(lines)

    def render_html(self) -> str:
        """Minimal HTML rendering used as the e-mail alternative part."""
        items = "".join(f"<li>{html.escape(line)}</li>" for line in self._lines())
        notes = ""
        if self.notes:
            notes = "<p>Notes:</p><ul>" + "".join(f"<li>{html.escape(n)}</li>" for n in self.notes) + "</ul>"
        return f"<h3>{html.escape(self.title)}</h3><ul>{items}</ul>{notes}"
