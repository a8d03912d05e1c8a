import json

from loris_ingest.core.tracker import ProcessedTracker


def test_mark_and_reload(tmp_path):
    path = tmp_path / "state" / ".tracker.json"
    tracker = ProcessedTracker(path)
    assert not tracker.is_processed("visit1.csv")

    tracker.mark_processed("visit1.csv", "success", "2/2 rows saved", fingerprint="10:1")

    reloaded = ProcessedTracker(path)
    assert reloaded.is_processed("visit1.csv", "10:1")
    record = reloaded.get("visit1.csv")
    assert record["status"] == "success"
    assert record["detail"] == "2/2 rows saved"
    assert record["fingerprint"] == "10:1"
    assert "timestamp" in record
    assert "visit1.csv" in reloaded and len(reloaded) == 1
    assert not path.with_name(path.name + ".tmp").exists()


def test_already_exists_counts_as_processed(tmp_path):
    tracker = ProcessedTracker(tmp_path / "t.json")
    tracker.mark_processed("STUDY01", "already_exists")
    assert tracker.is_processed("STUDY01")


def test_changed_fingerprint_makes_unit_eligible(tmp_path):
    tracker = ProcessedTracker(tmp_path / "t.json")
    tracker.mark_processed("visit1.csv", fingerprint="10:1")

    assert tracker.is_processed("visit1.csv", "10:1")
    assert not tracker.is_processed("visit1.csv", "12:2")
    # callers without a fingerprint still see the record
    assert tracker.is_processed("visit1.csv")


def test_legacy_non_terminal_records_are_ignored(tmp_path):
    path = tmp_path / "t.json"
    path.write_text(json.dumps({"old.csv": {"status": "failed"}, "junk": "not-a-record"}))

    tracker = ProcessedTracker(path)

    assert not tracker.is_processed("old.csv")
    assert "junk" not in tracker


def test_corrupt_file_is_treated_as_empty(tmp_path):
    path = tmp_path / "t.json"
    path.write_text("{not json")

    tracker = ProcessedTracker(path)

    assert len(tracker) == 0
    tracker.mark_processed("a")
    assert json.loads(path.read_text())["a"]["status"] == "success"


def test_unwritable_location_does_not_raise(tmp_path, caplog):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory")
    tracker = ProcessedTracker(blocker / "t.json")

    tracker.mark_processed("a")

    assert tracker.is_processed("a")
    assert "reprocessed on the next run" in caplog.text
