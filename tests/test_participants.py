import json

import pytest

from loris_ingest.config.schema import AppConfig, ProjectConfig
from loris_ingest.models import ALREADY_EXISTS, ALREADY_PROCESSED, RunContext
from loris_ingest.pipelines.base import bids_state_dir
from loris_ingest.pipelines.participants import TRACKER_NAME, run_participants

from conftest import FakeLorisClient


@pytest.fixture
def cfg():
    return AppConfig(project_mappings={"FDOPA": "7"})


def _outcomes(report):
    return dict(report.entries)


def _write_participants(bids_dir, *rows):
    header = "participant_id\texternal_id\tsex\tsite\tproject\tdob\n"
    (bids_dir / "participants.tsv").write_text(header + "".join(r + "\n" for r in rows), encoding="utf-8")


def test_creates_and_links_new_participants(bids_dir, cfg, fake_client, context):
    [report] = run_participants(fake_client, cfg, bids_dir, context)

    assert report.counts["success"] == 2
    assert fake_client.created == [
        {"PSCID": "EXT01", "Project": "FDOPA", "Site": "MNI", "Sex": "Male", "DoB": "1990-01-01"},
        {"PSCID": "EXT02", "Project": "FDOPA", "Site": "MNI", "Sex": "Female", "DoB": "1991-02-02"},
    ]
    assert fake_client.linked == [("300001", "7", "EXT01"), ("300002", "7", "EXT02")]
    assert "CandID 300001 (newly_created); EXT01 linked" == _outcomes(report)["sub-EXT01"].detail

    tracker = bids_state_dir(bids_dir) / TRACKER_NAME
    assert tracker == bids_dir / "code" / "loris_ingest" / "participant_sync_processed.json"
    assert sorted(json.loads(tracker.read_text())) == ["sub-EXT01", "sub-EXT02"]


def test_known_participants_are_left_alone(bids_dir, cfg, context):
    client = FakeLorisClient(known={"EXT01": "EXT01"})

    [report] = run_participants(client, cfg, bids_dir, context)

    outcomes = _outcomes(report)
    assert outcomes["sub-EXT01"].reason == ALREADY_EXISTS
    assert outcomes["sub-EXT02"].is_success
    assert [c["PSCID"] for c in client.created] == ["EXT02"]
    assert client.lookup_calls == [["EXT01", "EXT02"]]


def test_rerun_touches_nothing(bids_dir, cfg, fake_client, context):
    run_participants(fake_client, cfg, bids_dir, context)
    fake_client.created.clear()
    fake_client.linked.clear()
    fake_client.lookup_calls.clear()

    [report] = run_participants(fake_client, cfg, bids_dir, RunContext.start())

    assert {o.reason for o in _outcomes(report).values()} == {ALREADY_PROCESSED}
    assert fake_client.mutations == 0
    assert fake_client.lookup_calls == []


def test_invalid_rows_fail_locally(bids_dir, cfg, fake_client, context):
    _write_participants(
        bids_dir,
        "sub-EXT01\tEXT01\tunknown\tMNI\tFDOPA\t1990-01-01",
        "sub-EXT02\tEXT02\tF\tn/a\tFDOPA\tn/a",
    )

    [report] = run_participants(fake_client, cfg, bids_dir, context)

    outcomes = _outcomes(report)
    assert outcomes["sub-EXT01"].reason == "invalid sex value"
    assert outcomes["sub-EXT01"].detail == "unknown"
    assert outcomes["sub-EXT02"].reason == "missing required field"
    assert outcomes["sub-EXT02"].detail == "site, dob"
    assert fake_client.lookup_calls == []
    assert fake_client.mutations == 0
    assert report.exit_code == 1


def test_unmapped_project_fails(bids_dir, fake_client, context):
    [report] = run_participants(fake_client, AppConfig(), bids_dir, context)

    assert {o.reason for o in _outcomes(report).values()} == {"no ProjectExternalID mapping"}
    assert fake_client.mutations == 0


def test_project_resolution_and_fallback_mapping(bids_dir, fake_client, context):
    _write_participants(bids_dir, "sub-EXT01\tEXT01\tM\tMNI\t\t1990-01-01")
    cfg = AppConfig(api={"project_external_id": "1"})
    project = ProjectConfig(project="PREVENT")

    [report] = run_participants(fake_client, cfg, bids_dir, context, project=project)
    assert fake_client.created[0]["Project"] == "PREVENT"
    assert fake_client.linked == [("300001", "1", "EXT01")]

    [override] = run_participants(
        fake_client, cfg, bids_dir, RunContext.start(force=True), project=project, project_override="OTHER"
    )
    assert override.counts["success"] == 1
    assert fake_client.created[-1]["Project"] == "OTHER"


def test_orphan_and_missing_folders_are_noted(bids_dir, cfg, fake_client, context):
    (bids_dir / "sub-EXT03").mkdir()
    _write_participants(
        bids_dir,
        "sub-EXT01\tEXT01\tM\tMNI\tFDOPA\t1990-01-01",
        "sub-EXT04\tEXT04\tM\tMNI\tFDOPA\t1990-01-01",
    )

    [report] = run_participants(fake_client, cfg, bids_dir, context)

    assert any("sub-EXT02, sub-EXT03" in n and "orphan" in n for n in report.notes)
    assert any("sub-EXT04" in n and "without a folder" in n for n in report.notes)


def test_dry_run_writes_no_tracker(bids_dir, cfg, fake_client):
    [report] = run_participants(fake_client, cfg, bids_dir, RunContext.start(dry_run=True))

    assert report.counts["skipped"] == 2
    assert fake_client.mutations == 0
    assert not (bids_state_dir(bids_dir) / TRACKER_NAME).exists()


def test_missing_participants_file_raises(tmp_path, cfg, fake_client, context):
    with pytest.raises(FileNotFoundError):
        run_participants(fake_client, cfg, tmp_path, context)
