import smtplib
from unittest.mock import MagicMock, patch

from sessionward.service.email import EmailService, mask_address


def configured(**overrides):
    options = dict(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer",
        smtp_password="pw",
        from_email="no-reply@example.com",
    )
    options.update(overrides)
    return EmailService(**options)


def test_mask_address():
    assert mask_address("person@example.com") == "pe***@example.com"
    assert mask_address("not-an-address") == "redacted"


def test_unconfigured_service_skips_delivery():
    service = EmailService()
    with patch("sessionward.service.email.smtplib.SMTP") as smtp:
        assert service.send_password_reset("a@example.com", "ABCDEF-123456", expires_in_minutes=120)
    smtp.assert_not_called()


def test_reset_code_is_sent_over_starttls():
    service = configured()
    with patch("sessionward.service.email.smtplib.SMTP") as smtp:
        server = smtp.return_value
        server.__enter__.return_value = server
        assert service.send_password_reset("a@example.com", "ABCDEF-123456", expires_in_minutes=120)

    server.starttls.assert_called_once()
    server.login.assert_called_once_with("mailer", "pw")
    message = server.send_message.call_args[0][0]
    assert message["To"] == "a@example.com"
    assert "ABCDEF-123456" in message.get_content()
    assert "120 minutes" in message.get_content()


def test_implicit_tls_when_starttls_disabled():
    service = configured(smtp_use_tls=False, smtp_port=465)
    with patch("sessionward.service.email.smtplib.SMTP_SSL") as smtp_ssl:
        server = smtp_ssl.return_value
        server.__enter__.return_value = server
        assert service.send_password_reset("a@example.com", "code", expires_in_minutes=1)
    server.starttls.assert_not_called()
    server.send_message.assert_called_once()


def test_auth_failure_returns_false_and_closes():
    service = configured()
    with patch("sessionward.service.email.smtplib.SMTP") as smtp:
        server = smtp.return_value
        server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
        assert not service.send_password_reset("a@example.com", "code", expires_in_minutes=1)
    server.close.assert_called_once()
    server.send_message.assert_not_called()


def test_connection_error_returns_false():
    service = configured()
    with patch(
        "sessionward.service.email.smtplib.SMTP", MagicMock(side_effect=OSError("refused"))
    ):
        assert not service.send_password_reset("a@example.com", "code", expires_in_minutes=1)
