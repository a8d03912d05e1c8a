import json
from types import SimpleNamespace

import pytest
import requests

from loris_ingest.api import client as client_mod
from loris_ingest.api.loris import LorisClient
from loris_ingest.errors import ConflictError, RemoteError, TransientRemoteError, TransportExhausted


class DummyResp:
    def __init__(self, status=200, text="", payload=None):
        self.status_code = status
        self.text = json.dumps(payload) if payload is not None else text

    def json(self):
        return json.loads(self.text)


@pytest.fixture
def loris():
    session = SimpleNamespace(base_url="https://loris.example.org", api_version="v0.0.4-dev", verify=True, token="tok")
    return LorisClient(session, timeout=10)


@pytest.fixture
def posts(monkeypatch):
    """Record POSTs and answer them from a queue of responses."""
    calls = []
    queue = []

    def fake_post(url, headers=None, data=None, files=None, json=None, timeout=None, verify=True):
        calls.append(SimpleNamespace(url=url, headers=headers, data=data, files=files, json=json, timeout=timeout))
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    monkeypatch.setattr(client_mod.requests, "post", fake_post)
    return SimpleNamespace(calls=calls, queue=queue)


def test_client_timeout_env(monkeypatch):
    called = {}

    def fake_get(url, headers=None, params=None, timeout=None, verify=True):
        called["timeout"] = timeout
        return DummyResp()

    monkeypatch.setattr(client_mod.requests, "get", fake_get)
    monkeypatch.setenv("LORIS_TIMEOUT", "7")
    client_mod.loris_get("https://x", "candidates", "tok")
    assert called["timeout"] == 7.0

    monkeypatch.setenv("LORIS_TIMEOUT", "not-a-number")
    client_mod.loris_get("https://x", "candidates", "tok")
    assert called["timeout"] == client_mod.DEFAULT_TIMEOUT


def test_map_external_ids_sends_one_joined_string(loris, posts):
    posts.queue.append(DummyResp(200, "ExtStudyID,PSCID\nA,PSC1\nB,unauthorized_access\n"))

    rows = loris.map_external_ids(["A", "B"])

    call = posts.calls[0]
    assert call.url == "https://loris.example.org/cbigr_api/externalToInternalIdMapper"
    assert call.json == ["A,B"]
    assert call.headers["Accept"].startswith("text/csv")
    assert rows == [("A", "PSC1"), ("B", None)]


def test_map_single_id_not_found(loris, posts):
    posts.queue.append(DummyResp(400, '{"error": "no PSCIDS returned"}'))
    assert loris.map_external_ids(["A"]) == [("A", None)]


def test_map_batch_errors(loris, posts):
    posts.queue.append(DummyResp(404, "Number of returned IDs does not match"))
    with pytest.raises(RemoteError):
        loris.map_external_ids(["A", "B"])

    posts.queue.append(DummyResp(503, ""))
    with pytest.raises(TransientRemoteError):
        loris.map_external_ids(["A", "B"])

    posts.queue.append(requests.ConnectionError("down"))
    with pytest.raises(TransientRemoteError):
        loris.map_external_ids(["A"])


def test_create_candidate(loris, posts):
    posts.queue.append(DummyResp(201, payload={"Meta": {"CandID": 300001}}))

    cand = loris.create_candidate(pscid="EXT01", project="FDOPA", site="MNI", sex="Male", dob="1990-01-01")

    assert cand == "300001"
    call = posts.calls[0]
    assert call.url.endswith("/api/v0.0.4-dev/candidates")
    assert call.json == {
        "Candidate": {"Project": "FDOPA", "Site": "MNI", "Sex": "Male", "PSCID": "EXT01", "DoB": "1990-01-01"}
    }


def test_create_candidate_conflict_and_missing_id(loris, posts):
    posts.queue.append(DummyResp(409, payload={"error": "PSCID already exists"}))
    with pytest.raises(ConflictError) as info:
        loris.create_candidate(pscid="EXT01", project="FDOPA", site="MNI", sex="Male")
    assert info.value.status_code == 409

    posts.queue.append(DummyResp(201, payload={}))
    with pytest.raises(RemoteError, match="no CandID"):
        loris.create_candidate(pscid="EXT02", project="FDOPA", site="MNI", sex="Male")


def test_find_candidate_by_pscid_lists_once(loris, monkeypatch):
    calls = []

    def fake_get(url, headers=None, params=None, timeout=None, verify=True):
        calls.append(url)
        return DummyResp(200, payload={"Candidates": [{"PSCID": "EXT01", "CandID": "300001"}]})

    monkeypatch.setattr(client_mod.requests, "get", fake_get)

    assert loris.find_candidate_by_pscid("EXT01") == "300001"
    assert loris.find_candidate_by_pscid("EXT99") is None
    assert calls == ["https://loris.example.org/api/v0.0.4-dev/candidates"]


def test_link_external_id_is_multipart(loris, posts):
    posts.queue.append(DummyResp(200, ""))

    loris.link_external_id("300001", "5", "EXT01", comment="bids sync")

    files = posts.calls[0].files
    assert posts.calls[0].url.endswith("/candidate_parameters/ajax/formHandler.php")
    assert files == {
        "tab": (None, "externalIdentifier"),
        "candID": (None, "300001"),
        "ProjectID": (None, "5"),
        "ExtStudyID": (None, "EXT01"),
        "Comment": (None, "bids sync"),
    }


def test_instrument_exists_is_cached(loris, monkeypatch):
    seen = []

    def fake_get(url, headers=None, params=None, timeout=None, verify=True):
        seen.append(params["instrument"])
        return DummyResp(200 if params["instrument"] == "bmi" else 404)

    monkeypatch.setattr(client_mod.requests, "get", fake_get)

    assert loris.instrument_exists("bmi")
    assert not loris.instrument_exists("nope")
    assert loris.instrument_exists("bmi")
    assert seen == ["bmi", "nope"]

    loris.forget_instruments()
    loris.instrument_exists("bmi")
    assert seen == ["bmi", "nope", "bmi"]


def test_upload_falls_back_to_module_route(loris, posts, tmp_path):
    data = tmp_path / "visit.csv"
    data.write_text("PSCID,Visit_label,bmi_complete,moca_complete\n")
    posts.queue.extend([DummyResp(404, ""), DummyResp(200, payload={"success": True, "message": "Saved 4 out of 4"})])

    result = loris.upload_instrument_data(data, ["bmi", "moca"])

    assert [c.url for c in posts.calls] == [
        "https://loris.example.org/api/v0.0.4-dev/instrument_manager/instrument_data",
        "https://loris.example.org/instrument_manager/instrument_data",
    ]
    assert posts.calls[1].data == {"action": "CREATE_SESSIONS", "multi-instrument": "true"}
    assert result.rows_saved == 4


def test_upload_exhausted(loris, posts, tmp_path):
    data = tmp_path / "bmi.csv"
    data.write_text("x\n")
    posts.queue.extend([DummyResp(500, ""), DummyResp(405, "")])

    with pytest.raises(TransportExhausted) as info:
        loris.upload_instrument_data(data, ["bmi"])
    assert [n for n, _ in info.value.failures] == ["api", "module"]


def test_import_dicom_study_body(loris, posts):
    posts.queue.append(DummyResp(200, payload={"status": "success"}))

    result = loris.import_dicom_study("/data/dicoms/STUDY01", flags=["insert"])

    call = posts.calls[0]
    assert call.url.endswith("/cbigr_api/script/importdicomstudy")
    assert call.json == {
        "args": {"source": "/data/dicoms/STUDY01", "profile": "database_config.py"},
        "flags": ["insert"],
        "async": False,
    }
    assert call.timeout == loris.script_timeout
    assert result.payload == {"status": "success"}


def test_run_bids_import_body(loris, posts):
    posts.queue.append(DummyResp(200, payload={"status": "success", "code": 0}))

    loris.run_bids_import("/data/FDOPA/bids")

    call = posts.calls[0]
    assert call.url.endswith("/cbigr_api/script/bidsimport")
    assert call.json == {
        "args": {"directory": "/data/FDOPA/bids", "profile": "prod"},
        "flags": ["createcandidate", "createsession"],
        "async": False,
    }
