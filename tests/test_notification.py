import smtplib

import pytest

import loris_ingest.notify as notify_mod
from loris_ingest.config.schema import NotificationDefaults, ProjectConfig
from loris_ingest.core.report import RunReport
from loris_ingest.models import RunOutcome
from loris_ingest.notify import Notifier


class DummySMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.calls = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.calls.append("starttls")

    def login(self, user, password):
        self.calls.append(("login", user))

    def send_message(self, msg):
        DummySMTP.sent.append(msg)


@pytest.fixture(autouse=True)
def smtp(monkeypatch):
    DummySMTP.sent = []
    monkeypatch.setattr(notify_mod.smtplib, "SMTP", DummySMTP)
    return DummySMTP


def _defaults(**kwargs):
    return NotificationDefaults(
        smtp={"host": "smtp.example.org", "from": "loris@example.org", "username": "u", "password": "p"},
        default_on_success=["ops@example.org"],
        default_on_error=["alerts@example.org"],
        **kwargs,
    )


def _report(failed=False):
    report = RunReport("Clinical upload – FDOPA")
    report.record("bmi.csv", RunOutcome.success("2/2 rows saved"))
    if failed:
        report.record("moca.csv", RunOutcome.failed("upload failed"))
    return report


def test_recipients_prefer_project_settings():
    notifier = Notifier(_defaults())
    project = ProjectConfig(
        notification_emails={"clinical": {"on_success": ["team@example.org"], "on_error": []}}
    )

    assert notifier.recipients(project, "clinical", True) == ["team@example.org"]
    assert notifier.recipients(project, "clinical", False) == ["alerts@example.org"]
    assert notifier.recipients(project, "dicom", True) == ["ops@example.org"]
    assert notifier.recipients(None, "dicom", False) == ["alerts@example.org"]


def test_success_message(smtp, tmp_path):
    log_file = tmp_path / "clinical_run.log"
    log_file.write_text("ok")

    assert Notifier(_defaults()).notify("FDOPA", "clinical", [_report()], log_files=[log_file, tmp_path / "nope.log"])

    [msg] = smtp.sent
    assert msg["Subject"] == "SUCCESS: FDOPA Clinical Ingestion"
    assert msg["To"] == "ops@example.org"
    assert msg["From"] == "loris@example.org"
    body = msg.get_body(preferencelist=("plain",)).get_content()
    assert "bmi.csv" in body
    assert str(log_file) in body
    assert "nope.log" not in body


def test_failure_message(smtp):
    assert Notifier(_defaults()).notify("FDOPA", "dicom", [_report(failed=True)])

    [msg] = smtp.sent
    assert msg["Subject"] == "FAILED: FDOPA Dicom Ingestion"
    assert msg["To"] == "alerts@example.org"


def test_without_smtp_or_recipients_nothing_is_sent(smtp):
    assert Notifier(NotificationDefaults()).notify("FDOPA", "clinical", [_report()]) is False
    no_recipients = NotificationDefaults(smtp={"host": "smtp.example.org"})
    assert Notifier(no_recipients).notify("FDOPA", "clinical", [_report()]) is False
    assert smtp.sent == []


def test_smtp_error_is_logged_not_raised(monkeypatch, caplog):
    class Broken(DummySMTP):
        def send_message(self, msg):
            raise smtplib.SMTPRecipientsRefused({})

    monkeypatch.setattr(notify_mod.smtplib, "SMTP", Broken)

    assert Notifier(_defaults()).notify("FDOPA", "clinical", [_report()]) is False
    assert "Failed to send notification" in caplog.text
