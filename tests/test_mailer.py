import smtplib
from unittest import mock

import pytest

from authgate.mailer import Mailer

PASSWORD = "password"


def _mailer(port=587):
    password = PASSWORD
    return Mailer(
        "smtp.example.com",
        port,
        "noreply@example.com",
        password=password,
        sender_name="Auth",
    )


def _sent_message(server):
    server.send_message.assert_called_once()
    return server.send_message.call_args.args[0]


def test_send_builds_html_message():
    with mock.patch("smtplib.SMTP") as smtp_cls:
        server = smtp_cls.return_value.__enter__.return_value
        result = _mailer().send(
            ["a@example.com", "b@example.com"], "您的 Auth 验证码", "<p>123456</p>"
        )
    assert result is None
    message = _sent_message(server)
    assert message["From"] == "Auth <noreply@example.com>"
    assert message["To"] == "a@example.com, b@example.com"
    assert message["Subject"] == "您的 Auth 验证码"
    assert message.get_content_type() == "text/html"
    assert "<p>123456</p>" in message.get_content()


def test_send_uses_starttls_and_login():
    with mock.patch("smtplib.SMTP") as smtp_cls:
        server = smtp_cls.return_value.__enter__.return_value
        result = _mailer(587).send(["a@example.com"], "subject", "body")
    assert result is None
    assert smtp_cls.call_args.args == ("smtp.example.com", 587)
    assert server.starttls.call_count == 1
    assert server.login.call_args.args == ("noreply@example.com", PASSWORD)


def test_implicit_tls_port_uses_ssl_connection():
    with mock.patch("smtplib.SMTP_SSL") as ssl_cls, mock.patch("smtplib.SMTP") as smtp_cls:
        server = ssl_cls.return_value.__enter__.return_value
        result = _mailer(465).send(["a@example.com"], "subject", "body")
    assert result is None
    assert smtp_cls.call_count == 0
    assert ssl_cls.call_args.args == ("smtp.example.com", 465)
    assert server.starttls.call_count == 0
    assert _sent_message(server)["To"] == "a@example.com"


def test_send_failure_raises():
    with mock.patch("smtplib.SMTP") as smtp_cls:
        server = smtp_cls.return_value.__enter__.return_value
        server.send_message.side_effect = smtplib.SMTPException("boom")
        with pytest.raises(smtplib.SMTPException, match="boom"):
            _mailer().send(["a@example.com"], "subject", "body")


def test_connection_failure_raises():
    with mock.patch("smtplib.SMTP", side_effect=ConnectionRefusedError("refused")):
        with pytest.raises(ConnectionRefusedError):
            _mailer().send(["a@example.com"], "subject", "body")