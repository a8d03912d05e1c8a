import logging
from types import SimpleNamespace

import pytest
import yaml
from click.testing import CliRunner
from rich.logging import RichHandler

import loris_ingest.cli.common as common_mod
from loris_ingest.cli import main
from loris_ingest.utils.logging import console_level

from conftest import FakeLorisClient


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for var in ("LORIS_INGEST_CONFIG", "LORIS_BASE_URL", "LORIS_USERNAME", "LORIS_PASSWORD", "LORIS_TIMEOUT"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def client(monkeypatch):
    fake = FakeLorisClient()
    monkeypatch.setattr(common_mod, "LorisClient", SimpleNamespace(from_settings=lambda settings: fake))
    return fake


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "loris_client_config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "api": {"base_url": "https://loris.example.org", "username": "admin", "password": "pw"},
                "collections": [{"name": "main", "base_path": str(tmp_path), "projects": [{"name": "FDOPA"}]}],
                "logging": {"directory": str(tmp_path / "logs")},
                "project_mappings": {"FDOPA": "7"},
            }
        ),
        encoding="utf-8",
    )
    return path


def _invoke(*args):
    return CliRunner().invoke(main, [str(a) for a in args])


def test_help_lists_pipelines():
    result = _invoke("--help")
    assert result.exit_code == 0
    for name in ("clinical", "dicom", "imaging", "participants", "reidentify"):
        assert name in result.output


def test_missing_credentials_abort(bids_dir):
    result = _invoke("participants", bids_dir)
    assert result.exit_code == 1
    assert "Missing LORIS settings" in result.output


def test_participants_sync(bids_dir, config_file, client):
    result = _invoke("-c", config_file, "participants", bids_dir)

    assert result.exit_code == 0, result.output
    assert client.authenticated == 1
    assert [c["PSCID"] for c in client.created] == ["EXT01", "EXT02"]
    assert "BIDS participant sync – bids" in result.output


def test_participants_dry_run_does_not_authenticate(bids_dir, config_file, client):
    result = _invoke("participants", bids_dir, "--dry-run")

    assert result.exit_code == 0, result.output
    assert client.authenticated == 0
    assert client.mutations == 0
    assert not (bids_dir / "code").exists()


def test_participants_failures_set_exit_code(bids_dir, config_file, client):
    (bids_dir / "participants.tsv").write_text(
        "participant_id\texternal_id\tsex\tsite\tproject\tdob\nsub-EXT01\tEXT01\t?\tMNI\tFDOPA\t1990-01-01\n",
        encoding="utf-8",
    )

    result = _invoke("participants", bids_dir)

    assert result.exit_code == 1
    assert client.mutations == 0


def test_clinical_runs_configured_projects(project_dir, config_file, client):
    (project_dir / "deidentified-raw" / "clinical" / "unknown.csv").write_text("record_id,foo\nEXT1,2\n")

    result = _invoke("clinical", "--collection", "main")

    assert result.exit_code == 1
    assert "Clinical data upload – FDOPA" in result.output
    assert list((project_dir / "logs" / "clinical").glob("clinical_run_*.log"))


def test_clinical_unknown_collection(config_file, client):
    result = _invoke("clinical", "--collection", "nope")
    assert result.exit_code == 1
    assert "not configured" in result.output


def test_dicom_project_dir(project_dir, config_file, client):
    (project_dir / "deidentified-raw" / "imaging" / "dicoms" / "STUDY01").mkdir()
    (project_dir / "deidentified-raw" / "imaging" / "dicoms" / "STUDY01" / "IM1.dcm").write_bytes(b"DICM")

    result = _invoke("dicom", "--project-dir", project_dir, "--flag", "insert", "--profile", "prod.py")

    assert result.exit_code == 0, result.output
    assert client.imports == [("STUDY01", "prod.py", ["insert"])]


def test_dicom_project_dir_excludes_scope(project_dir, config_file, client):
    result = _invoke("dicom", "--project-dir", project_dir, "--collection", "main")
    assert result.exit_code == 1
    assert "cannot be combined" in result.output


def test_imaging_runs_configured_projects(project_dir, config_file, client):
    anat = project_dir / "bids" / "sub-01" / "ses-01" / "anat"
    anat.mkdir(parents=True)
    (anat / "sub-01_ses-01_T1w.nii.gz").write_bytes(b"\x1f\x8b fake")

    result = _invoke("imaging", "--collection", "main", "--project", "FDOPA", "--flag", "createsession")

    assert result.exit_code == 0, result.output
    assert client.bids_imports == [("bids", "prod", ["createsession"])]
    assert "BIDS imaging import – FDOPA" in result.output


def test_reidentify(bids_dir, tmp_path, config_file, client):
    client.known["EXT01"] = "PSC0001"

    result = _invoke("reidentify", bids_dir, tmp_path / "reid")

    assert result.exit_code == 0, result.output
    assert (tmp_path / "reid" / "sub-PSC0001").is_dir()


@pytest.mark.parametrize(
    "flags, level",
    [([], logging.INFO), (["-v"], logging.DEBUG), (["--debug"], logging.DEBUG)],
)
def test_console_level(bids_dir, flags, level):
    _invoke(*flags, "participants", bids_dir)

    [handler] = [h for h in logging.getLogger().handlers if isinstance(h, RichHandler)]
    assert handler.level == level
    assert console_level(verbose="-v" in flags, debug="--debug" in flags) == level
