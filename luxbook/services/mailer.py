from __future__ import annotations

import smtplib
from email.message import EmailMessage
from typing import Sequence

from luxbook.core.config import Settings, get_settings
from luxbook.core.logging import get_logger

logger = get_logger(__name__)


def build_message(to_email: str, subject: str, body: str, settings: Settings | None = None) -> EmailMessage:
    settings = settings or get_settings()
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.email_from
    msg["To"] = to_email
    msg.set_content(body)
    return msg


def _connect(settings: Settings) -> smtplib.SMTP:
    if settings.smtp_use_tls:
        return smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port)
    return smtplib.SMTP(settings.smtp_host, settings.smtp_port)


def send_messages(messages: Sequence[EmailMessage]) -> list[str]:
    """Deliver ``messages`` over a single SMTP session.

    Returns the addresses the server refused. Connection and authentication
    failures raise; the caller decides whether they matter.
    For development, MailHog on localhost:1025 works.
    """
    if not messages:
        return []

    settings = get_settings()
    server = _connect(settings)
    refused: list[str] = []
    try:
        if settings.smtp_username:
            server.login(settings.smtp_username, settings.smtp_password)
        for msg in messages:
            try:
                server.send_message(msg)
            except smtplib.SMTPRecipientsRefused:
                logger.warning("mail.recipient_refused", subject=msg["Subject"])
                refused.append(msg["To"])
    finally:
        try:
            server.quit()
        except smtplib.SMTPServerDisconnected:
            logger.debug("mail.quit_after_disconnect")
    return refused
