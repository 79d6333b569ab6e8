"""Outgoing HTML mail over SMTP."""

from __future__ import annotations

import logging
import smtplib
import ssl
from collections.abc import Sequence
from email.message import EmailMessage

logger = logging.getLogger(__name__)

IMPLICIT_TLS_PORT = 465


class Mailer:
    """Sends HTML mail through one SMTP account."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        sender_name: str,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender_name = sender_name
        self.timeout = timeout

    def _build_message(self, to: Sequence[str], subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = f"{self.sender_name} <{self.username}>"
        message["To"] = ", ".join(to)
        message["Subject"] = subject
        message.set_content(body, subtype="html")
        return message

    def send(self, to: Sequence[str], subject: str, body: str) -> None:
        """Send an HTML message to every address in ``to``."""
        message = self._build_message(to, subject, body)
        context = ssl.create_default_context()
        try:
            if self.port == IMPLICIT_TLS_PORT:
                connection = smtplib.SMTP_SSL(
                    self.host, self.port, timeout=self.timeout, context=context
                )
            else:
                connection = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
            with connection as server:
                server.ehlo()
                if self.port != IMPLICIT_TLS_PORT and server.has_extn("starttls"):
                    server.starttls(context=context)
                    server.ehlo()
                if self.username and server.has_extn("auth"):
                    server.login(self.username, self.password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("mail send error: %s", exc)
            raise