import smtplib
from unittest.mock import MagicMock, patch

from conftest import make_settings
from identcore.service.email import EmailService


def _smtp_service(**overrides):
    values = dict(
        smtp_host="smtp.example.com",
        smtp_user="mailer@example.com",
        smtp_password="pw",
        from_email="noreply@example.com",
    )
    values.update(overrides)
    return EmailService(**values)


def test_dev_mode_logs_instead_of_sending():
    service = EmailService.from_settings(make_settings())

    assert not service.is_configured
    with patch("identcore.service.email.smtplib.SMTP") as smtp:
        assert service.send_registration_code("a@example.com", "123456", 10)
    smtp.assert_not_called()


def test_registration_code_is_sent_over_starttls():
    service = _smtp_service()

    with patch("identcore.service.email.smtplib.SMTP") as smtp:
        server = smtp.return_value.__enter__.return_value
        assert service.send_registration_code("a@example.com", "123456", 10)

    server.starttls.assert_called_once()
    server.login.assert_called_once_with("mailer@example.com", "pw")
    from_addr, to_addr, message = server.sendmail.call_args.args
    assert (from_addr, to_addr) == ("noreply@example.com", "a@example.com")
    assert "Your verification code" in message


def test_code_appears_in_both_bodies():
    html_body, text_body = _smtp_service()._render("Title", ["Lead:", "Tail."], code="987654")

    assert "987654" in html_body
    assert "987654" in text_body


def test_untrusted_text_is_escaped():
    html_body, _ = _smtp_service(from_name="<b>Ops</b>")._render("T", ["<script>x</script>"])

    assert "<script>" not in html_body
    assert "&lt;b&gt;Ops&lt;/b&gt;" in html_body


def test_auth_failure_returns_false():
    service = _smtp_service()

    with patch("identcore.service.email.smtplib.SMTP") as smtp:
        server = smtp.return_value.__enter__.return_value
        server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
        assert not service.send_password_reset_code("a@example.com", "123456", 10)


def test_connection_failure_returns_false():
    service = _smtp_service()

    with patch("identcore.service.email.smtplib.SMTP", side_effect=OSError("unreachable")):
        assert not service.send_password_changed("a@example.com")


def test_implicit_tls_uses_smtp_ssl():
    service = _smtp_service(smtp_use_tls=False, smtp_port=465)

    with patch("identcore.service.email.smtplib.SMTP_SSL") as smtp_ssl:
        server = smtp_ssl.return_value.__enter__.return_value
        server.sendmail = MagicMock()
        assert service.send_password_changed("a@example.com")

    server.sendmail.assert_called_once()
