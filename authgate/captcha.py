"""E-mailed verification codes with per-address and per-IP rate limits."""

from __future__ import annotations

import secrets
import threading
import time
from collections.abc import Callable, Sequence
from datetime import timedelta
from http import HTTPStatus
from pathlib import Path
from typing import Any, Protocol

DEFAULT_TEMPLATE_PATH = "./resources/template/email/captcha.html"
DEFAULT_STORE_TTL = 5 * 60.0
CODE_TTL = 10 * 60.0
RATE_LIMIT_TTL = 60.0


class CaptchaError(Exception):
    """A failed captcha request carrying a response code and an HTTP status."""

    def __init__(self, code: int, message: str, status: int) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = int(status)


class _Mailer(Protocol):
    def send(self, to: Sequence[str], subject: str, body: str) -> None: ...


def _seconds(ttl: float | timedelta) -> float:
    if isinstance(ttl, timedelta):
        return ttl.total_seconds()
    return float(ttl)


class ExpiringStore:
    """A thread-safe in-memory mapping whose entries expire."""

    def __init__(
        self,
        default_ttl: float | timedelta = DEFAULT_STORE_TTL,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.default_ttl = _seconds(default_ttl)
        self._clock = clock or time.monotonic
        self._entries: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: Any, ttl: float | timedelta | None = None) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds, or the default lifetime."""
        lifetime = self.default_ttl if ttl is None else _seconds(ttl)
        with self._lock:
            self._entries[key] = (value, self._clock() + lifetime)

    def get(self, key: str) -> Any:
        """Return the live value under ``key``, or None."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires = entry
            if self._clock() > expires:
                del self._entries[key]
                return None
            return value

    def delete(self, key: str) -> None:
        """Forget ``key`` if present."""
        with self._lock:
            self._entries.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None


def generate_code() -> str:
    """Return a random six-digit code."""
    return f"{secrets.randbelow(1_000_000):06d}"


class CaptchaService:
    """Sends verification codes by mail and checks them once."""

    def __init__(
        self,
        mailer: _Mailer,
        app_name: str,
        template_path: str | Path = DEFAULT_TEMPLATE_PATH,
        clock: Callable[[], float] | None = None,
        code_factory: Callable[[], str] = generate_code,
    ) -> None:
        self.mailer = mailer
        self.app_name = app_name
        self.template_path = Path(template_path)
        self._code_factory = code_factory
        self._codes = ExpiringStore(DEFAULT_STORE_TTL, clock)
        self._email_limits = ExpiringStore(RATE_LIMIT_TTL, clock)
        self._ip_limits = ExpiringStore(RATE_LIMIT_TTL, clock)

    def request(self, email: str, client_ip: str) -> None:
        """Mail a fresh code to ``email``, subject to rate limits."""
        email = email.strip()
        if not email:
            raise CaptchaError(1, "Missing email", HTTPStatus.BAD_REQUEST)
        if email in self._email_limits:
            raise CaptchaError(
                3,
                "Too many requests for this email, please try again later",
                HTTPStatus.TOO_MANY_REQUESTS,
            )
        if client_ip in self._ip_limits:
            raise CaptchaError(
                3,
                "Too many requests from this IP, please try again later",
                HTTPStatus.TOO_MANY_REQUESTS,
            )

        code = self._code_factory()
        self._codes.set(email, code, CODE_TTL)

        try:
            template = self.template_path.read_text(encoding="utf-8")
        except OSError as exc:
            self._codes.delete(email)
            raise CaptchaError(
                2, "Failed to load email template", HTTPStatus.INTERNAL_SERVER_ERROR
            ) from exc

        body = template.replace("{{CODE}}", code).replace("{{NAME}}", self.app_name)
        subject = f"您的 {self.app_name} 验证码"
        try:
            self.mailer.send([email], subject, body)
        except Exception as exc:
            self._codes.delete(email)
            raise CaptchaError(
                2, "Failed to send email", HTTPStatus.INTERNAL_SERVER_ERROR
            ) from exc

        self._email_limits.set(email, True)
        self._ip_limits.set(client_ip, True)

    def verify(self, email: str, code: str) -> bool:
        """Check ``code`` for ``email``; a matching code is consumed."""
        stored = self._codes.get(email)
        if isinstance(stored, str) and stored == code:
            self._codes.delete(email)
            return True
        return False