"""
auth/mailer.py -- Email dispatch collaborator for magic links, one-time codes
and password resets.

The protocol services only know Mailer.send(EmailMessage) -> SendResult.
Delivery is pluggable:
  LogMailer  -- development default; logs recipient and subject, never the body
                (the body carries the raw secret).
  SmtpMailer -- stdlib smtplib in a worker thread so the event loop is never
                blocked on the SMTP conversation.

send() reports failure through SendResult(success=False, error=...) for
delivery problems the mailer understands (SMTP refusals, connection errors).
Callers bound the call with asyncio.wait_for; a timeout is theirs to handle.

Email bodies are rendered from auth/templates/ with Jinja2 autoescaping on,
so a user-controlled value (first name) cannot inject markup.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
import uuid
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from core.config import Settings

logger = logging.getLogger("portcullis.auth.mailer")

_TEMPLATE_DIR = Path(__file__).parent / "templates"

_env = Environment(
    loader=FileSystemLoader(str(_TEMPLATE_DIR)),
    autoescape=select_autoescape(["html"]),
)


@dataclass
class EmailMessage:
    to: str
    subject: str
    html_body: str


@dataclass
class SendResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


def render_template(name: str, **context) -> str:
    """Render an email template from auth/templates/."""
    return _env.get_template(name).render(**context)


# ---------------------------------------------------------------------------
# Dispatchers
# ---------------------------------------------------------------------------


class Mailer:
    """Base dispatcher. Subclasses implement send()."""

    async def send(self, message: EmailMessage) -> SendResult:
        raise NotImplementedError


class LogMailer(Mailer):
    async def send(self, message: EmailMessage) -> SendResult:
        message_id = uuid.uuid4().hex
        logger.info("Email (log provider) to=%s subject=%r id=%s", message.to, message.subject, message_id)
        return SendResult(success=True, message_id=message_id)


class SmtpMailer(Mailer):
    """Deliver over SMTP, with STARTTLS and login when configured."""

    def __init__(self, settings: Settings) -> None:
        self._host = settings.smtp_host
        self._port = settings.smtp_port
        self._username = settings.smtp_username
        self._password = settings.smtp_password
        self._use_tls = settings.smtp_use_tls
        self._sender = settings.mail_from
        self._timeout = settings.email_timeout_seconds

    async def send(self, message: EmailMessage) -> SendResult:
        try:
            message_id = await asyncio.to_thread(self._send_sync, message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("SMTP delivery to %s failed: %s", message.to, exc)
            return SendResult(success=False, error=str(exc))
        return SendResult(success=True, message_id=message_id)

    def _send_sync(self, message: EmailMessage) -> str:
        mime = MIMEMultipart("alternative")
        mime["Subject"] = message.subject
        mime["From"] = self._sender
        mime["To"] = message.to
        message_id = f"<{uuid.uuid4().hex}@{self._host}>"
        mime["Message-ID"] = message_id
        mime.attach(MIMEText(message.html_body, "html", "utf-8"))

        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as smtp:
            if self._use_tls:
                smtp.starttls()
            if self._username:
                smtp.login(self._username, self._password)
            smtp.sendmail(self._sender, [message.to], mime.as_string())
        return message_id


def build_mailer(settings: Settings) -> Mailer:
    """Return the dispatcher selected by MAIL_PROVIDER."""
    if settings.mail_provider == "smtp":
        logger.info("Mail provider: smtp (%s:%s)", settings.smtp_host, settings.smtp_port)
        return SmtpMailer(settings)
    logger.info("Mail provider: log (emails are not delivered)")
    return LogMailer()
