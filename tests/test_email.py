import smtplib

from tokenward.service.email import (
    EmailConfirmationPayload,
    EmailResetPasswordPayload,
    EmailService,
)


def _configured():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer@example.com",
        smtp_password="secret",
        from_name="Tokenward",
    )


def test_unconfigured_service_logs_instead_of_sending(monkeypatch):
    service = EmailService()

    def fail(*args, **kwargs):
        raise AssertionError("no delivery expected in dev mode")

    monkeypatch.setattr(service, "_deliver", fail)
    payload = EmailConfirmationPayload("user@example.com", "User", "https://app/verify?token=t")

    assert service.is_configured is False
    assert service.send_confirmation_email(payload) is True


def test_message_carries_link_and_escapes_name(monkeypatch):
    service = _configured()
    sent = []
    monkeypatch.setattr(service, "_deliver", lambda to, subject, msg: sent.append((to, subject, msg)))

    ok = service.send_reset_password_email(
        EmailResetPasswordPayload("user@example.com", "<b>Eve</b>", "https://app/reset?token=abc")
    )

    assert ok is True
    to, subject, msg = sent[0]
    assert to == "user@example.com"
    assert subject == "Reset your Tokenward password"
    assert msg["From"] == "Tokenward <mailer@example.com>"
    text_part, html_part = msg.get_payload()
    assert "https://app/reset?token=abc" in text_part.get_payload(decode=True).decode()
    html = html_part.get_payload(decode=True).decode()
    assert "&lt;b&gt;Eve&lt;/b&gt;" in html
    assert "<b>Eve</b>" not in html


def test_delivery_failure_returns_false(monkeypatch):
    service = _configured()

    def refuse(*args, **kwargs):
        raise smtplib.SMTPServerDisconnected("connection closed")

    monkeypatch.setattr(service, "_deliver", refuse)
    payload = EmailConfirmationPayload("user@example.com", "User", "https://app/verify?token=t")

    assert service.send_confirmation_email(payload) is False


def test_connection_error_returns_false(monkeypatch):
    service = _configured()

    def unreachable(*args, **kwargs):
        raise ConnectionRefusedError("refused")

    monkeypatch.setattr(service, "_deliver", unreachable)
    payload = EmailConfirmationPayload("user@example.com", "User", "https://app/verify?token=t")

    assert service.send_confirmation_email(payload) is False


def test_redact_email():
    service = EmailService()
    assert service._redact_email("someone@example.com") == "so***@example.com"
    assert service._redact_email("no-at-sign") == "redacted"
