from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage

logger = logging.getLogger(__name__)


class MailNotConfigured(RuntimeError):
    pass


def mail_configured(config: dict) -> bool:
    return bool((config.get("MAIL_SERVER") or "").strip())


def send_mail(config: dict, *, to: list[str], subject: str, body: str) -> None:
    """Send a plain-text email through the configured SMTP relay."""
    if not mail_configured(config):
        raise MailNotConfigured("MAIL_SERVER is not set.")
    recipients = [r for r in to if r]
    if not recipients:
        return

    msg = EmailMessage()
    msg["From"] = config.get("MAIL_FROM") or "no-reply@backoffice.local"
    msg["To"] = ", ".join(recipients)
    msg["Subject"] = subject
    msg.set_content(body)

    server = config["MAIL_SERVER"]
    port = int(config.get("MAIL_PORT") or 587)
    with smtplib.SMTP(server, port, timeout=15) as smtp:
        smtp.ehlo()
        if port != 25:
            smtp.starttls()
            smtp.ehlo()
        username = config.get("MAIL_USERNAME")
        if username:
            smtp.login(username, config.get("MAIL_PASSWORD") or "")
        smtp.send_message(msg)
    logger.info("Sent mail subject=%r to=%s", subject, ", ".join(recipients))
