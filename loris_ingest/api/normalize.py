"""
Normalisation of every LORIS response shape the pipelines depend on.

LORIS endpoints answer in several styles: JSON objects with a ``success``
flag, JSON objects carrying only ``message``/``error``, bare text, empty
bodies, and CSV for the identifier mapper.  All of that is mapped here onto
:class:`~loris_ingest.models.UploadResult` or plain ``(external, internal)``
pairs so nothing else in the package inspects raw bodies.
"""

from __future__ import annotations

import csv
import io
import json
import re
from typing import Any, List, Optional, Sequence, Tuple

import requests

from loris_ingest.errors import RemoteError
from loris_ingest.models import UploadResult

#: Marker returned by the mapper for identifiers the account may not see.
UNAUTHORIZED_SENTINEL = "unauthorized_access"

_SAVED_RE = re.compile(r"Saved\s+(\d+)\s+out\s+of\s+(\d+)", re.IGNORECASE)
_MAX_TEXT = 500


def _is_2xx(status_code: int) -> bool:
    return 200 <= status_code < 300


def _flatten(message: Any) -> Tuple[str, List[str]]:
    """Return ``(text, errors)`` for a message that may be a list or dict."""
    if isinstance(message, list):
        errors = [str(m) for m in message if m not in (None, "")]
        return "; ".join(errors), errors
    if isinstance(message, dict):
        errors = [f"{k}: {v}" for k, v in message.items()]
        return "; ".join(errors), errors
    return str(message), []


def _id_mapping(payload: dict) -> List[Tuple[str, str]]:
    pairs: List[Tuple[str, str]] = []
    for item in payload.get("idMapping") or []:
        if not isinstance(item, dict):
            continue
        ext = item.get("ExtStudyID") or item.get("extStudyID") or item.get("ext_study_id")
        cand = item.get("CandID") or item.get("candID") or item.get("cand_id")
        if ext and cand:
            pairs.append((str(ext), str(cand)))
    return pairs


def normalize_upload_response(status_code: int, body: Optional[str]) -> UploadResult:
    """Map an HTTP status and raw body onto an :class:`UploadResult`.

    Rules:
        * empty body – success iff 2xx, message ``"HTTP <code>"``;
        * non-JSON body – success iff 2xx, message is the (trimmed) body;
        * status ≥ 400 – failure, message from ``message`` → ``error`` →
          ``"HTTP <code>"``;
        * otherwise ``success`` (default ``True``), ``message`` (default
          ``"OK"``) and ``idMapping`` are read from the JSON object.

    ``"Saved N out of M"`` anywhere in the message fills the row counters.
    """
    text = (body or "").strip()
    if not text:
        return UploadResult(_is_2xx(status_code), f"HTTP {status_code}", status_code)

    try:
        payload = json.loads(text)
    except ValueError:
        return UploadResult(_is_2xx(status_code), text[:_MAX_TEXT], status_code)

    if not isinstance(payload, dict):
        return UploadResult(_is_2xx(status_code), "OK", status_code, payload=payload)

    if status_code >= 400:
        raw = payload.get("message") or payload.get("error") or f"HTTP {status_code}"
        success = False
    else:
        raw = payload.get("message", "OK")
        success = bool(payload.get("success", True))
        if not success and payload.get("error") and not payload.get("message"):
            raw = payload["error"]

    message, errors = _flatten(raw)
    result = UploadResult(
        success=success,
        message=message or ("OK" if success else f"HTTP {status_code}"),
        status_code=status_code,
        id_mapping=_id_mapping(payload),
        errors=errors,
        payload=payload,
    )
    saved = _SAVED_RE.search(message)
    if saved:
        result.rows_saved, result.rows_total = int(saved.group(1)), int(saved.group(2))
    return result


def from_response(resp: requests.Response) -> UploadResult:
    """Shortcut for :func:`normalize_upload_response` on a live response."""
    return normalize_upload_response(resp.status_code, resp.text)


def error_message(resp: requests.Response) -> str:
    """Short ``"HTTP <code>: <message>"`` text for a failed response."""
    result = from_response(resp)
    if result.message and result.message != f"HTTP {resp.status_code}":
        return f"HTTP {resp.status_code}: {result.message}"
    return f"HTTP {resp.status_code}"


def looks_already_installed(message: str) -> bool:
    """Instrument installs report duplicates as free text in a 200 body."""
    return "already" in (message or "").lower()


def candidate_id(payload: Any) -> Optional[str]:
    """Extract the CandID from a candidate-creation answer."""
    if not isinstance(payload, dict):
        return None
    meta = payload.get("Meta")
    if isinstance(meta, dict) and meta.get("CandID"):
        return str(meta["CandID"])
    if payload.get("CandID"):
        return str(payload["CandID"])
    return None


# --------------------------------------------------------------------------- #
# Identifier mapper                                                           #
# --------------------------------------------------------------------------- #
def _clean_id(value: str) -> str:
    """Strip Excel-style ``="..."`` wrapping and surrounding quotes."""
    value = value.strip()
    if value.startswith('="') and value.endswith('"'):
        value = value[2:-1]
    return value.strip().strip('"').strip()


def parse_mapper_csv(
    text: str, expected: Sequence[str]
) -> List[Tuple[str, Optional[str]]]:
    """Parse the mapper's CSV answer into one pair per *expected* identifier.

    The first line is a header; each following line is ``ExtID,PSCID``.
    :data:`UNAUTHORIZED_SENTINEL` or an empty PSCID means *not found*.

    Raises:
        RemoteError: When the number of rows differs from ``len(expected)``.
    """
    rows = [r for r in csv.reader(io.StringIO(text.strip())) if any(c.strip() for c in r)]
    data = rows[1:]
    if len(data) != len(expected):
        raise RemoteError(
            f"mapper returned {len(data)} row(s) for {len(expected)} ID(s)"
        )

    found = {}
    for position, row in enumerate(data):
        ext = _clean_id(row[0]) if row else ""
        internal = _clean_id(row[1]) if len(row) > 1 else ""
        if ext not in expected:
            ext = expected[position]
        if not internal or internal == UNAUTHORIZED_SENTINEL:
            found[ext] = None
        else:
            found[ext] = internal
    return [(ext, found.get(ext)) for ext in expected]
