"""Unit tests for auth/mailer.py -- template rendering and dispatchers."""

import asyncio
import smtplib

from auth.mailer import EmailMessage, LogMailer, SmtpMailer, build_mailer, render_template
from tests.support import make_settings


def test_templates_escape_user_values():
    body = render_template(
        "magic_link.html",
        app_name="Portcullis",
        first_name="<script>x</script>",
        link="https://app.example.com/verify?token=abc",
        expires_minutes=15,
    )
    assert "<script>" not in body
    assert "&lt;script&gt;" in body
    assert "https://app.example.com/verify?token=abc" in body


def test_otp_template_without_verify_url():
    body = render_template(
        "otp.html", app_name="Portcullis", first_name=None, code="004211", verify_url=None, expires_minutes=10
    )
    assert "004211" in body
    assert "verification page" not in body


def test_build_mailer_selects_provider():
    assert isinstance(build_mailer(make_settings()), LogMailer)
    assert isinstance(build_mailer(make_settings(mail_provider="smtp", smtp_host="mail.local")), SmtpMailer)


def test_log_mailer_reports_success():
    result = asyncio.run(LogMailer().send(EmailMessage(to="a@example.com", subject="s", html_body="b")))
    assert result.success is True
    assert result.message_id


def test_smtp_failure_becomes_send_result(monkeypatch):
    def refuse(*args, **kwargs):
        raise smtplib.SMTPConnectError(421, "unavailable")

    monkeypatch.setattr(smtplib, "SMTP", refuse)
    mailer = SmtpMailer(make_settings(mail_provider="smtp", smtp_host="mail.local"))
    result = asyncio.run(mailer.send(EmailMessage(to="a@example.com", subject="s", html_body="b")))
    assert result.success is False
    assert "unavailable" in result.error


def test_smtp_delivery(monkeypatch):
    delivered = []

    class FakeSMTP:
        def __init__(self, host, port, timeout):
            self.host = host

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def starttls(self):
            delivered.append("starttls")

        def login(self, user, password):
            delivered.append(("login", user))

        def sendmail(self, sender, recipients, body):
            delivered.append((sender, recipients))

    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    settings = make_settings(
        mail_provider="smtp", smtp_host="mail.local", smtp_username="bot", smtp_password="pw", smtp_use_tls=True
    )
    result = asyncio.run(SmtpMailer(settings).send(EmailMessage(to="a@example.com", subject="s", html_body="b")))
    assert result.success is True
    assert result.message_id.endswith("@mail.local>")
    assert delivered == ["starttls", ("login", "bot"), (settings.mail_from, ["a@example.com"])]
