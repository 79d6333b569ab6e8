"""HTTP endpoints for captcha, login and registration."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from datetime import timedelta, timezone
from http import HTTPStatus
from typing import Any

import bcrypt
from flask import Flask, Response, request
from pymongo.errors import PyMongoError

from authgate.accounts import (
    AccountError,
    RegisterRequest,
    UserDoc,
    is_user_banned,
    register_user,
)
from authgate.captcha import CaptchaError, CaptchaService

logger = logging.getLogger(__name__)

SESSION_DURATION = timedelta(hours=72)
USERS_COLLECTION = "users"
BAN_END_FORMAT = "%Y-%m-%d %H:%M:%S"
BCRYPT_MAX_PASSWORD_BYTES = 72
HTTP_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]

_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}")
_DIGITS = frozenset("0123456789")


class LoginError(Exception):
    """A failed login carrying a response code and an HTTP status."""

    def __init__(self, code: int, message: str, status: int) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = int(status)


class _InvalidRequest(Exception):
    pass


def is_email(text: str) -> bool:
    """Tell whether ``text`` looks like an e-mail address."""
    return _EMAIL_PATTERN.fullmatch(text) is not None


def is_numeric(text: str) -> bool:
    """Tell whether ``text`` is a non-empty run of ASCII digits."""
    return bool(text) and all(ch in _DIGITS for ch in text)


def _to_int64(digits: str) -> int:
    value = int(digits) & 0xFFFFFFFFFFFFFFFF
    return value - (1 << 64) if value >= 1 << 63 else value


def _password_matches(hashed: str, password: str) -> bool:
    encoded = password.encode("utf-8")
    if len(encoded) > BCRYPT_MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
    except ValueError:
        return False


def _ban_message(ban: Any) -> str:
    message = "User is banned"
    if ban.ban_reason:
        message += ": " + ban.ban_reason
    if ban.ban_end is not None:
        end = ban.ban_end.astimezone(timezone.utc)
        message += " (Until: " + end.strftime(BAN_END_FORMAT) + ")"
    return message


def login(database: Any, tokens: Any, username: str, password: str) -> str:
    """Check credentials and return a fresh session token."""
    username = username.strip()
    password = password.strip()
    if not username or not password:
        raise LoginError(1, "Missing fields", HTTPStatus.BAD_REQUEST)

    if is_email(username):
        query: dict[str, Any] = {"email": username}
    elif is_numeric(username):
        query = {"userId": _to_int64(username)}
    else:
        query = {"username": username}

    try:
        doc = database[USERS_COLLECTION].find_one(query)
    except PyMongoError as exc:
        raise LoginError(1, "Database error", HTTPStatus.INTERNAL_SERVER_ERROR) from exc
    if doc is None:
        raise LoginError(1, "User not found", HTTPStatus.UNAUTHORIZED)

    user = UserDoc.from_document(doc)

    try:
        ban = is_user_banned(database, user.user_id)
    except PyMongoError as exc:
        raise LoginError(4, "Ban check failed", HTTPStatus.INTERNAL_SERVER_ERROR) from exc
    if ban is not None:
        raise LoginError(5, _ban_message(ban), HTTPStatus.OK)

    if not _password_matches(user.password, password):
        raise LoginError(2, "Incorrect password", HTTPStatus.UNAUTHORIZED)

    try:
        return tokens.generate(user.user_id, SESSION_DURATION)
    except Exception as exc:
        raise LoginError(
            3, "Token generation failed", HTTPStatus.INTERNAL_SERVER_ERROR
        ) from exc


def _reply(status: int, code: int, message: str, token: str | None = None) -> Response:
    payload: dict[str, Any] = {"code": code, "message": message}
    if token:
        payload["token"] = token
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n"
    return Response(body, status=int(status), mimetype="application/json")


def _decode_body(fields: tuple[str, ...]) -> dict[str, str]:
    """Read the first JSON object of the body into string fields, matching keys case-insensitively."""
    text = request.get_data().decode("utf-8", errors="replace").lstrip()
    try:
        data, _ = json.JSONDecoder().raw_decode(text)
    except ValueError as exc:
        raise _InvalidRequest from exc
    values = dict.fromkeys(fields, "")
    if data is None:
        return values
    if not isinstance(data, dict):
        raise _InvalidRequest
    by_lower = {name.lower(): name for name in fields}
    for key, value in data.items():
        name = key if key in values else by_lower.get(key.lower())
        if name is None:
            continue
        if value is None:
            continue
        if not isinstance(value, str):
            raise _InvalidRequest
        values[name] = value
    return values


def _client_ip() -> str:
    ip = request.headers.get("X-Real-IP", "")
    if not ip:
        ip = request.headers.get("X-Forwarded-For", "")
    if not ip:
        ip = (request.remote_addr or "").split(":")[0]
    return ip


def create_app(database: Any, tokens: Any, captcha: CaptchaService) -> Flask:
    """Build the web application serving /captcha, /login and /register."""
    app = Flask(__name__)

    def invalid(handler: Callable[[], Response]) -> Callable[[], Response]:
        def wrapped() -> Response:
            try:
                return handler()
            except _InvalidRequest:
                return _reply(HTTPStatus.BAD_REQUEST, 1, "Invalid request")

        wrapped.__name__ = handler.__name__
        return wrapped

    @invalid
    def captcha_endpoint() -> Response:
        fields = _decode_body(("email",))
        try:
            captcha.request(fields["email"], _client_ip())
        except CaptchaError as exc:
            return _reply(exc.status, exc.code, exc.message)
        return _reply(HTTPStatus.OK, 0, "Captcha sent")

    @invalid
    def login_endpoint() -> Response:
        fields = _decode_body(("username", "password"))
        try:
            token = login(database, tokens, fields["username"], fields["password"])
        except LoginError as exc:
            return _reply(exc.status, exc.code, exc.message)
        return _reply(HTTPStatus.OK, 0, "Login success", token)

    @invalid
    def register_endpoint() -> Response:
        fields = _decode_body(("username", "password", "email", "captcha"))
        if fields["captcha"] == "":
            return _reply(HTTPStatus.BAD_REQUEST, 1, "Captcha required")
        if not captcha.verify(fields["email"], fields["captcha"]):
            return _reply(HTTPStatus.UNAUTHORIZED, 4, "Invalid or expired captcha")
        try:
            register_user(database, RegisterRequest(**fields))
        except AccountError as exc:
            return _reply(exc.status, exc.code, exc.message)
        return _reply(HTTPStatus.OK, 0, "Register success")

    app.add_url_rule("/captcha", "captcha", captcha_endpoint, methods=HTTP_METHODS)
    app.add_url_rule("/login", "login", login_endpoint, methods=HTTP_METHODS)
    app.add_url_rule("/register", "register", register_endpoint, methods=HTTP_METHODS)
    return app


def serve(
    app: Flask,
    port: int,
    ssl_cert: str | None = None,
    ssl_key: str | None = None,
) -> None:
    """Run ``app`` on every interface, over TLS when a certificate and key are given."""
    if ssl_cert and ssl_key:
        logger.info("Starting HTTPS server on :%d", port)
        app.run(host="0.0.0.0", port=port, ssl_context=(ssl_cert, ssl_key))
        return
    logger.info("Starting HTTP server on :%d", port)
    app.run(host="0.0.0.0", port=port)