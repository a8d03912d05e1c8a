"""
E-mail notification of run results.

A :class:`Notifier` mirrors the end-of-run reports into one message per
project and modality.  Recipients come from ``project.json``
(``notification_emails.<modality>.on_success|on_error``) and fall back to the
client configuration's ``notification_defaults``.

Delivery is best effort: a missing SMTP section or an empty recipient list is
logged and skipped, and SMTP errors are logged without affecting the run's
exit code.
"""

from __future__ import annotations

import logging
import smtplib
from html import escape
from email.message import EmailMessage
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from loris_ingest.config.schema import NotificationDefaults, ProjectConfig
from loris_ingest.core.report import RunReport

logger = logging.getLogger(__name__)


class Notifier:
    """Send run reports via SMTP.

    Args:
        defaults: ``notification_defaults`` section of the client configuration.
    """

    def __init__(self, defaults: NotificationDefaults) -> None:
        self.defaults = defaults

    def recipients(self, project: Optional[ProjectConfig], modality: str, success: bool) -> List[str]:
        """Return the recipient list for one project/modality/result."""
        configured = project.recipients(modality) if project is not None else None
        if configured is not None:
            chosen = configured.on_success if success else configured.on_error
            if chosen:
                return list(chosen)
        return list(self.defaults.default_on_success if success else self.defaults.default_on_error)

    def send(self, recipients: Sequence[str], subject: str, body: str, html: Optional[str] = None) -> bool:
        """Deliver one message; return ``True`` when the SMTP server accepted it."""
        smtp = self.defaults.smtp
        if smtp is None:
            logger.info("No SMTP settings configured; not sending %r", subject)
            return False
        if not recipients:
            logger.info("No recipients for %r; not sending", subject)
            return False

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = smtp.sender
        msg["To"] = ", ".join(recipients)
        msg.set_content(body)
        if html:
            msg.add_alternative(html, subtype="html")

        try:
            with smtplib.SMTP(smtp.host, smtp.port, timeout=30) as server:
                if smtp.use_tls:
                    server.starttls()
                if smtp.username and smtp.password:
                    server.login(smtp.username, smtp.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send notification %r: %s", subject, exc)
            return False
        logger.info("Notification sent to %s", ", ".join(recipients))
        return True

    def notify(
        self,
        project_name: str,
        modality: str,
        reports: Iterable[RunReport],
        *,
        project: Optional[ProjectConfig] = None,
        log_files: Sequence[Path] = (),
    ) -> bool:
        """Send the combined *reports* for one project run."""
        reports = list(reports)
        success = not any(r.has_failures for r in reports)
        subject = f"{'SUCCESS' if success else 'FAILED'}: {project_name} {modality.capitalize()} Ingestion"

        body = "\n\n".join(r.render() for r in reports)
        html = "".join(r.render_html() for r in reports)
        existing_logs = [p for p in log_files if p.exists()]
        if existing_logs:
            body += "\n\nLog files:\n" + "\n".join(f"  {p}" for p in existing_logs)
            html += "<p>Log files:</p><ul>" + "".join(f"<li>{escape(str(p))}</li>" for p in existing_logs) + "</ul>"

        return self.send(self.recipients(project, modality, success), subject, body, html)
