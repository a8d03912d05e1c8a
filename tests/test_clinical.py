import json

import pytest

from loris_ingest.config import load_project
from loris_ingest.core.resolver import IdentityResolver
from loris_ingest.models import ALREADY_EXISTS, ALREADY_PROCESSED, RunContext, UploadResult
from loris_ingest.pipelines.clinical import (
    ARCHIVE_SUBDIR,
    DATA_SUBDIR,
    DD_SUBDIR,
    INSTALL_TRACKER,
    UPLOAD_TRACKER,
    header_instruments,
    is_excluded,
    run_clinical,
)


@pytest.fixture
def project(project_dir):
    dd = project_dir / DD_SUBDIR
    (dd / "bmi.linst").write_text("testname{@}bmi\n")
    (dd / "moca.csv").write_text("Variable / Field Name,Form Name\nmoca_1,moca\n")
    (dd / "empty.json").write_text("")
    (dd / "notes.txt").write_text("ignored")

    data = project_dir / DATA_SUBDIR
    (data / "bmi.csv").write_text("PSCID,Visit_label,height\nPSC1,V1,180\nPSC2,V1,170\n")
    (data / "visit.csv").write_text(
        "record_id,bmi_complete,moca_complete,nip_connector_complete\nEXT1,2,2,0\n"
    )
    (data / "unknown.csv").write_text("record_id,foo_complete\nEXT1,2\n")
    (data / "header_only.csv").write_text("PSCID,Visit_label\n")
    (data / "scan_draft.csv").write_text("PSCID\nPSC1\n")
    return load_project(project_dir / "project.json")


def _outcomes(report):
    return {name: outcome for name, outcome in report.entries}


def test_helpers():
    assert header_instruments(["record_id", "bmi_complete", " moca_complete ", "project_request_form_complete", "bmi_complete"]) == ["bmi", "moca"]
    assert is_excluded("scan_draft.csv", ["*_draft.csv"])
    assert is_excluded("exact.csv", ["exact.csv"])
    assert not is_excluded("bmi.csv", ["*_draft.csv"])


def test_full_clinical_run(project, fake_client, context):
    fake_client.instruments = {"bmi", "moca"}

    install_report, upload_report = run_clinical(fake_client, project, context)

    installs = _outcomes(install_report)
    assert sorted(fake_client.installs) == ["bmi.linst", "moca.csv"]
    assert installs["bmi.linst"].is_success and installs["moca.csv"].is_success
    assert installs["empty.json"].reason == "empty data dictionary"
    assert "notes.txt" not in installs
    assert fake_client.forgot == 1

    uploads = _outcomes(upload_report)
    assert ("bmi.csv", ["bmi"]) in fake_client.uploads
    assert ("visit.csv", ["bmi", "moca"]) in fake_client.uploads
    assert uploads["unknown.csv"].reason == "no matching instruments"
    assert uploads["header_only.csv"].reason == "empty file"
    assert uploads["scan_draft.csv"].reason == "excluded"
    assert uploads["bmi.csv"].detail == "bmi: 2/2 rows saved"

    day = context.started_at.strftime("%Y-%m-%d")
    archived = project.root / ARCHIVE_SUBDIR / day
    assert sorted(p.name for p in archived.iterdir()) == ["bmi.csv", "visit.csv"]

    upload_tracker = json.loads((project.root / ARCHIVE_SUBDIR / UPLOAD_TRACKER).read_text())
    assert sorted(upload_tracker) == ["bmi.csv", "visit.csv"]
    install_tracker = json.loads((project.root / DD_SUBDIR / INSTALL_TRACKER).read_text())
    assert sorted(install_tracker) == ["bmi.linst", "moca.csv"]


def test_rerun_only_touches_new_or_failed_files(project, fake_client, context):
    fake_client.instruments = {"bmi", "moca"}
    run_clinical(fake_client, project, context)
    fake_client.installs.clear()
    fake_client.uploads.clear()

    install_report, upload_report = run_clinical(fake_client, project, RunContext.start())

    assert fake_client.installs == []
    assert fake_client.uploads == []
    uploads = _outcomes(upload_report)
    assert uploads["bmi.csv"].reason == ALREADY_PROCESSED
    assert uploads["unknown.csv"].is_failed
    assert _outcomes(install_report)["bmi.linst"].reason == ALREADY_PROCESSED


def test_changed_file_is_uploaded_again_and_archived_beside_previous(project, fake_client, context):
    fake_client.instruments = {"bmi"}
    run_clinical(fake_client, project, context)
    (project.root / DATA_SUBDIR / "bmi.csv").write_text("PSCID,Visit_label,height\nPSC1,V1,181\nPSC2,V1,170\nPSC3,V1,165\n")
    fake_client.uploads.clear()

    _, upload_report = run_clinical(fake_client, project, context)

    assert fake_client.uploads == [("bmi.csv", ["bmi"])]
    day_dir = project.root / ARCHIVE_SUBDIR / context.started_at.strftime("%Y-%m-%d")
    assert (day_dir / f"{context.stamp}_bmi.csv").exists()


def test_install_duplicates_count_as_existing(project, fake_client, context):
    fake_client.install_results = {
        "bmi.linst": UploadResult(True, "Instrument already installed", 200),
        "moca.csv": UploadResult(False, "exists", 409),
    }

    install_report, _ = run_clinical(fake_client, project, context)

    installs = _outcomes(install_report)
    assert installs["bmi.linst"].reason == ALREADY_EXISTS
    assert installs["moca.csv"].reason == ALREADY_EXISTS
    assert fake_client.forgot == 0
    tracker = json.loads((project.root / DD_SUBDIR / INSTALL_TRACKER).read_text())
    assert tracker["bmi.linst"]["status"] == "already_exists"


def test_failed_upload_is_not_archived(project, fake_client, context):
    fake_client.instruments = {"bmi"}
    fake_client.upload_results = {
        "bmi.csv": UploadResult(False, "Row 1: bad; Row 2: bad", 200, errors=["Row 1: bad", "Row 2: bad"])
    }

    _, upload_report = run_clinical(fake_client, project, context)

    assert _outcomes(upload_report)["bmi.csv"].reason == "Row 1: bad"
    assert not (project.root / ARCHIVE_SUBDIR / context.started_at.strftime("%Y-%m-%d") / "bmi.csv").exists()


def test_id_mapping_seeds_resolver(project, fake_client, context):
    fake_client.instruments = {"bmi", "moca"}
    fake_client.upload_results = {
        "visit.csv": UploadResult(True, "Saved 1 out of 1", 200, id_mapping=[("EXT1", "300001")], rows_saved=1, rows_total=1)
    }
    resolver = IdentityResolver(fake_client)

    run_clinical(fake_client, project, context, resolver=resolver)

    assert resolver.resolve("EXT1").internal_id == "300001"
    assert fake_client.lookup_calls == []


def test_dry_run_changes_nothing(project, fake_client):
    fake_client.instruments = {"bmi", "moca"}

    install_report, upload_report = run_clinical(fake_client, project, RunContext.start(dry_run=True))

    assert fake_client.mutations == 0
    assert not (project.root / ARCHIVE_SUBDIR).exists()
    assert not (project.root / DD_SUBDIR / INSTALL_TRACKER).exists()
    assert _outcomes(upload_report)["scan_draft.csv"].reason == "excluded"
