from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .models import PipelineRun, RunStatus
from .settings import settings


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - SDP_ENABLE_EMAIL=true
      - SDP_SMTP_HOST / SDP_SMTP_PORT
      - SDP_SMTP_USER / SDP_SMTP_PASSWORD
      - SDP_EMAIL_FROM / SDP_EMAIL_TO
    """
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    ):
        return False

    try:
        msg = MIMEMultipart()
        msg["From"] = settings.email_from
        msg["To"] = settings.email_to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, settings.email_to, msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError):
        return False


def format_run_report(run: PipelineRun) -> tuple[str, str]:
    icon = "FAILED" if run.status is RunStatus.FAILED else "OK"
    subject = f"[sdp] {icon}: run {run.id} ({run.trigger.value} {run.revision})"
    lines = [
        f"Run: {run.id}",
        f"Trigger: {run.trigger.value}",
        f"Revision: {run.revision}",
        f"Status: {run.status.value}",
    ]
    if run.failed_stage:
        lines.append(f"Failed stage: {run.failed_stage} ({run.error_kind})")
        lines.append(f"Detail: {run.detail}")
    lines.append("")
    lines += [f"  {s.stage_name:<24} {s.outcome.value:<8} {s.detail}" for s in run.stages]
    return subject, "\n".join(lines)


def notify_run_finished(run: PipelineRun) -> bool:
    """Email a report for failed runs; successful runs stay quiet."""
    if run.status is not RunStatus.FAILED:
        return False
    subject, body = format_run_report(run)
    return send_email(subject, body)
