from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from . import db
from .settings import settings


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - FLEET_ENABLE_EMAIL=true
      - FLEET_SMTP_HOST / FLEET_SMTP_PORT
      - FLEET_SMTP_USER / FLEET_SMTP_PASSWORD
      - FLEET_EMAIL_FROM / FLEET_EMAIL_TO
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
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError) as e:
        db.log_event("WARN", f"Alert email not sent: {type(e).__name__}: {e}")
        return False


def fatal_alert(message: str, instance_id: str | None = None, domain: str | None = None) -> None:
    """Surface a condition that needs an operator.

    Always recorded as an ALERT event (visible in the status query); emailed when configured.
    """
    db.log_event("ALERT", message, instance_id=instance_id, domain=domain)
    subject = f"FLEET ALERT: {instance_id or 'fleet'}"
    body = f"Instance: {instance_id or '-'}\nDomain: {domain or '-'}\nDetail: {message}"
    send_email(subject, body)
