"""
High-level LORIS client used by every pipeline.

:class:`LorisClient` bundles a :class:`~loris_ingest.api.session.LorisSession`
with the handful of endpoints the ingestion pipelines need:

========================  ====================================================
Method                    Endpoint
========================  ====================================================
map_external_ids          POST cbigr_api/externalToInternalIdMapper (CSV answer)
create_candidate          POST api/<version>/candidates
find_candidate_by_pscid   GET  api/<version>/candidates
link_external_id          POST candidate_parameters/ajax/formHandler.php
instrument_exists         GET  instrument_manager/instrument_data?action=VALIDATE_SESSIONS
install_instrument        POST instrument_manager (transport chain)
upload_instrument_data    POST instrument_manager/instrument_data (transport chain)
import_dicom_study        POST cbigr_api/script/importdicomstudy
run_bids_import           POST cbigr_api/script/bidsimport
========================  ====================================================

Failures are raised as :class:`~loris_ingest.errors.RemoteError` subclasses:
5xx and network problems as :class:`~loris_ingest.errors.TransientRemoteError`,
HTTP 409 as :class:`~loris_ingest.errors.ConflictError`.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from loris_ingest.errors import ConflictError, RemoteError, TransientRemoteError
from loris_ingest.models import UploadResult

from .client import loris_get, loris_post
from .normalize import (
    candidate_id,
    error_message,
    from_response,
    parse_mapper_csv,
)
from .session import DEFAULT_API_VERSION, LorisSession
from .transports import TransportChain, UploadRequest, build_chain

logger = logging.getLogger(__name__)

MAPPER_ENDPOINT = "cbigr_api/externalToInternalIdMapper"
EXTERNAL_ID_FORM = "candidate_parameters/ajax/formHandler.php"
INSTRUMENT_DATA = "instrument_manager/instrument_data"
INSTRUMENT_INSTALL = "instrument_manager"
SCRIPT_ENDPOINT = "cbigr_api/script/{name}"

DEFAULT_SCRIPT_TIMEOUT = 1800.0


def _raise_for(resp: requests.Response, what: str) -> None:
    """Raise the matching :class:`RemoteError` for a non-2xx *resp*."""
    code = resp.status_code
    if 200 <= code < 300:
        return
    message = f"{what}: {error_message(resp)}"
    if code == 409:
        raise ConflictError(message)
    if code >= 500:
        raise TransientRemoteError(message, code)
    raise RemoteError(message, code)


class LorisClient:
    """Token-authenticated access to one LORIS instance.

    Args:
        session: Token holder (performs login and renewal).
        transports: Ordered upload route names, see
            :func:`loris_ingest.api.transports.build_chain`.
        timeout: Per-request timeout for regular calls.
        script_timeout: Timeout for long-running script endpoints.
    """

    def __init__(
        self,
        session: LorisSession,
        *,
        transports: Sequence[str] = ("api", "module"),
        timeout: Optional[float] = None,
        script_timeout: float = DEFAULT_SCRIPT_TIMEOUT,
    ) -> None:
        self.session = session
        self.base_url = session.base_url
        self.api_version = session.api_version or DEFAULT_API_VERSION
        self.timeout = timeout
        self.script_timeout = script_timeout
        self.verify = session.verify
        self.chain: TransportChain = build_chain(
            transports,
            self.base_url,
            lambda: self.session.token,
            api_version=self.api_version,
            timeout=timeout,
            verify=self.verify,
        )
        self._instrument_cache: Dict[str, bool] = {}
        self._candidates: Optional[Dict[str, str]] = None

    @classmethod
    def from_settings(cls, settings: Any) -> "LorisClient":
        """Build a client from :class:`loris_ingest.config.schema.ApiSettings`."""
        session = LorisSession(
            settings.base_url,
            settings.username,
            settings.password,
            api_version=settings.api_version,
            expiry_minutes=settings.token_expiry_minutes,
            timeout=settings.timeout,
            verify=settings.verify_ssl,
        )
        return cls(
            session,
            transports=settings.upload_transports,
            timeout=settings.timeout,
            script_timeout=settings.script_timeout,
        )

    def authenticate(self) -> None:
        """Log in eagerly so credential problems surface before any unit runs."""
        self.session.authenticate()

    # ------------------------------------------------------------------ #
    # Thin wrappers
    # ------------------------------------------------------------------ #
    def _api(self, path: str) -> str:
        return f"api/{self.api_version}/{path.lstrip('/')}"

    def _get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        return loris_get(
            self.base_url, endpoint, self.session.token, params,
            timeout=self.timeout, verify=self.verify,
        )

    def _post(self, endpoint: str, *, timeout: Optional[float] = None, **kwargs) -> requests.Response:
        return loris_post(
            self.base_url, endpoint, self.session.token,
            timeout=timeout or self.timeout, verify=self.verify, **kwargs,
        )

    # ------------------------------------------------------------------ #
    # Identity
    # ------------------------------------------------------------------ #
    def map_external_ids(self, external_ids: Sequence[str]) -> List[Tuple[str, Optional[str]]]:
        """Map external study IDs to PSCIDs in one request.

        The mapper answers HTTP 400 when no PSCID matched and 404 when the
        number of rows does not match the request.  For a single identifier
        both mean *not found*; for a batch they are a failure the caller may
        retry identifier by identifier.

        Raises:
            RemoteError: Unusable answer for a batch request.
            TransientRemoteError: 5xx answer.
        """
        ids = [str(e) for e in external_ids]
        if not ids:
            return []
        try:
            resp = self._post(MAPPER_ENDPOINT, json=[",".join(ids)], accept="text/csv, */*")
        except requests.RequestException as exc:
            raise TransientRemoteError(f"mapper unreachable: {type(exc).__name__}") from exc

        if resp.status_code in (400, 404) and len(ids) == 1:
            return [(ids[0], None)]
        _raise_for(resp, "mapper")
        return parse_mapper_csv(resp.text, ids)

    def create_candidate(
        self,
        *,
        pscid: str,
        project: str,
        site: str,
        sex: str,
        dob: Optional[str] = None,
    ) -> str:
        """Create a candidate and return its new CandID.

        Raises:
            ConflictError: The PSCID already exists (HTTP 409).
            RemoteError: Any other failure, or a success answer without CandID.
        """
        candidate = {"Project": project, "Site": site, "Sex": sex, "PSCID": pscid}
        if dob:
            candidate["DoB"] = dob
        resp = self._post(self._api("candidates"), json={"Candidate": candidate})
        _raise_for(resp, "create candidate")
        cand = candidate_id(from_response(resp).payload)
        if not cand:
            raise RemoteError("create candidate: response carried no CandID", resp.status_code)
        if self._candidates is not None:
            self._candidates[pscid] = cand
        return cand

    def find_candidate_by_pscid(self, pscid: str) -> Optional[str]:
        """Return the CandID registered under *pscid* (list fetched once per client)."""
        if self._candidates is None:
            resp = self._get(self._api("candidates"))
            _raise_for(resp, "list candidates")
            payload = from_response(resp).payload or {}
            self._candidates = {
                str(c.get("PSCID")): str(c.get("CandID"))
                for c in payload.get("Candidates", [])
                if isinstance(c, dict) and c.get("PSCID") and c.get("CandID")
            }
        return self._candidates.get(pscid)

    def link_external_id(
        self,
        cand_id: str,
        project_external_id: str,
        ext_study_id: str,
        comment: Optional[str] = None,
    ) -> None:
        """Attach *ext_study_id* to candidate *cand_id* under *project_external_id*.

        Raises:
            ConflictError: The link already exists.
            RemoteError: Any other non-2xx answer.
        """
        fields = {
            "tab": "externalIdentifier",
            "candID": str(cand_id),
            "ProjectID": str(project_external_id),
            "ExtStudyID": ext_study_id,
        }
        if comment:
            fields["Comment"] = comment
        # multipart/form-data is required by the candidate_parameters module
        multipart = {k: (None, v) for k, v in fields.items()}
        resp = self._post(EXTERNAL_ID_FORM, files=multipart)
        _raise_for(resp, "link external ID")

    # ------------------------------------------------------------------ #
    # Instruments
    # ------------------------------------------------------------------ #
    def instrument_exists(self, instrument: str) -> bool:
        """Return whether LORIS knows *instrument*; cached for the client's lifetime."""
        if instrument in self._instrument_cache:
            return self._instrument_cache[instrument]
        try:
            resp = self._get(INSTRUMENT_DATA, {"action": "VALIDATE_SESSIONS", "instrument": instrument})
            exists = 200 <= resp.status_code < 300
        except requests.RequestException as exc:
            logger.debug("Instrument check failed for %r: %s", instrument, exc)
            exists = False
        self._instrument_cache[instrument] = exists
        return exists

    def forget_instruments(self) -> None:
        """Drop cached existence checks (after installing new instruments)."""
        self._instrument_cache.clear()

    def install_instrument(self, path: Path) -> UploadResult:
        """Upload a data-dictionary file (LINST, REDCap CSV or BIDS JSON)."""
        mimetype = "application/json" if path.suffix.lower() == ".json" else "text/plain"
        request = UploadRequest(
            INSTRUMENT_INSTALL, {}, file_field="install_file", file_path=path, mimetype=mimetype,
        )
        return self.chain.attempt(request)

    def upload_instrument_data(
        self,
        path: Path,
        instruments: Sequence[str],
        *,
        action: str = "CREATE_SESSIONS",
    ) -> UploadResult:
        """Upload *path* for one instrument, or as a multi-instrument file.

        Raises:
            TransportExhausted: No upload route produced a definitive answer.
        """
        if not instruments:
            raise ValueError("at least one instrument is required")
        if len(instruments) == 1:
            fields = {"instrument": instruments[0], "action": action}
        else:
            fields = {"action": action, "multi-instrument": "true"}
        mimetype = "text/tab-separated-values" if path.suffix.lower() == ".tsv" else "text/csv"
        request = UploadRequest(INSTRUMENT_DATA, fields, file_field="data_file", file_path=path, mimetype=mimetype)
        return self.chain.attempt(request)

    # ------------------------------------------------------------------ #
    # Script endpoints
    # ------------------------------------------------------------------ #
    def run_script(self, name: str, body: Dict[str, Any]) -> UploadResult:
        """POST *body* to ``cbigr_api/script/<name>`` and normalise the answer.

        Raises:
            TransientRemoteError: Network failure or timeout.
        """
        try:
            resp = self._post(SCRIPT_ENDPOINT.format(name=name), json=body, timeout=self.script_timeout)
        except requests.RequestException as exc:
            raise TransientRemoteError(f"script {name}: {type(exc).__name__}") from exc
        return from_response(resp)

    def import_dicom_study(
        self,
        source: str,
        *,
        profile: str = "database_config.py",
        flags: Sequence[str] = ("insert", "verbose"),
    ) -> UploadResult:
        """Run the server-side ``importdicomstudy`` script on *source*."""
        body = {
            "args": {"source": source, "profile": profile},
            "flags": list(flags),
            "async": False,
        }
        return self.run_script("importdicomstudy", body)

    def run_bids_import(
        self,
        directory: str,
        *,
        profile: str = "prod",
        flags: Sequence[str] = ("createcandidate", "createsession"),
    ) -> UploadResult:
        """Run the server-side ``bidsimport`` script on the BIDS dataset *directory*."""
        body = {
            "args": {"directory": directory, "profile": profile},
            "flags": list(flags),
            "async": False,
        }
        return self.run_script("bidsimport", body)
