import json
from pathlib import Path

import pytest

from loris_ingest.errors import ConflictError
from loris_ingest.models import RunContext, UploadResult


class FakeLorisClient:
    """In-memory stand-in for :class:`loris_ingest.api.loris.LorisClient`.

    ``known`` maps external IDs to the identifier the mapper returns.  Every
    remote call is recorded so tests can assert on network traffic.
    """

    def __init__(self, known=None):
        self.known = dict(known or {})
        self.candidates = {}
        self.conflict_on_create = set()
        self.instruments = set()
        self.install_results = {}
        self.upload_results = {}
        self.import_results = {}
        self.bids_import_results = []
        self.next_cand = 300000

        self.lookup_calls = []
        self.created = []
        self.linked = []
        self.installs = []
        self.uploads = []
        self.imports = []
        self.bids_imports = []
        self.forgot = 0
        self.authenticated = 0

    def authenticate(self):
        self.authenticated += 1

    # identity -----------------------------------------------------------
    def map_external_ids(self, external_ids):
        self.lookup_calls.append(list(external_ids))
        return [(e, self.known.get(e)) for e in external_ids]

    def create_candidate(self, *, pscid, project, site, sex, dob=None):
        if pscid in self.conflict_on_create:
            raise ConflictError("create candidate: HTTP 409: PSCID already exists")
        self.next_cand += 1
        cand = str(self.next_cand)
        self.created.append({"PSCID": pscid, "Project": project, "Site": site, "Sex": sex, "DoB": dob})
        self.candidates[pscid] = cand
        return cand

    def find_candidate_by_pscid(self, pscid):
        return self.candidates.get(pscid)

    def link_external_id(self, cand_id, project_external_id, ext_study_id, comment=None):
        self.linked.append((cand_id, project_external_id, ext_study_id))

    # instruments --------------------------------------------------------
    def instrument_exists(self, instrument):
        return instrument in self.instruments

    def forget_instruments(self):
        self.forgot += 1

    def install_instrument(self, path):
        self.installs.append(path.name)
        return self.install_results.get(path.name, UploadResult(True, "OK", 200))

    def upload_instrument_data(self, path, instruments, *, action="CREATE_SESSIONS"):
        self.uploads.append((path.name, list(instruments)))
        return self.upload_results.get(
            path.name, UploadResult(True, "Saved 2 out of 2", 200, rows_saved=2, rows_total=2)
        )

    # scripts ------------------------------------------------------------
    def import_dicom_study(self, source, *, profile="database_config.py", flags=("insert", "verbose")):
        self.imports.append((Path(source).name, profile, list(flags)))
        return self.import_results.get(
            Path(source).name,
            UploadResult(True, "OK", 200, payload={"status": "success", "message": "imported"}),
        )

    def run_bids_import(self, directory, *, profile="prod", flags=("createcandidate", "createsession")):
        self.bids_imports.append((Path(directory).name, profile, list(flags)))
        if self.bids_import_results:
            return self.bids_import_results.pop(0)
        return UploadResult(True, "OK", 200, payload={"status": "success", "code": 0, "message": "imported"})

    @property
    def mutations(self):
        return (
            len(self.created) + len(self.linked) + len(self.installs) + len(self.uploads)
            + len(self.imports) + len(self.bids_imports)
        )


@pytest.fixture
def fake_client():
    return FakeLorisClient()


@pytest.fixture
def context():
    return RunContext.start()


@pytest.fixture
def project_dir(tmp_path):
    """A project laid out the way the clinical and DICOM pipelines expect."""
    root = tmp_path / "FDOPA"
    for sub in (
        "documentation/data_dictionary",
        "deidentified-raw/clinical",
        "deidentified-raw/imaging/dicoms",
    ):
        (root / sub).mkdir(parents=True)
    (root / "project.json").write_text(
        json.dumps(
            {
                "project_common_name": "FDOPA",
                "project": "FDOPA",
                "site": "MNI",
                "exclude_data_files": ["*_draft.csv"],
            }
        ),
        encoding="utf-8",
    )
    return root


@pytest.fixture
def bids_dir(tmp_path):
    """Minimal BIDS dataset with two subjects listed in participants.tsv."""
    root = tmp_path / "bids"
    root.mkdir()
    (root / "dataset_description.json").write_text(
        json.dumps({"Name": "Demo", "BIDSVersion": "1.9.0"}), encoding="utf-8"
    )
    (root / "participants.tsv").write_text(
        "participant_id\texternal_id\tsex\tsite\tproject\tdob\n"
        "sub-EXT01\tEXT01\tM\tMNI\tFDOPA\t1990-01-01\n"
        "sub-EXT02\tEXT02\tfemale\tMNI\tFDOPA\t1991-02-02\n",
        encoding="utf-8",
    )
    for sub in ("sub-EXT01", "sub-EXT02"):
        anat = root / sub / "anat"
        anat.mkdir(parents=True)
        (anat / f"{sub}_T1w.nii.gz").write_bytes(b"\x1f\x8b fake")
        (anat / f"{sub}_T1w.json").write_text(
            json.dumps({"Source": f"{sub}_T1w.nii.gz"}), encoding="utf-8"
        )
    return root
