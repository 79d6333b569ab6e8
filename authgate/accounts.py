"""User registration and ban records."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Any, Protocol

import bcrypt
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from authgate.database import next_sequence_value

USERNAME_PATTERN = re.compile(r"[a-z0-9_]+")
BCRYPT_ROUNDS = 10
BCRYPT_MAX_PASSWORD_BYTES = 72

USERS_COLLECTION = "users"
BANS_COLLECTION = "users_bans"
USER_COUNTER = "user_id"


class AccountError(Exception):
    """A registration failure carrying a response code and an HTTP status."""

    def __init__(self, code: int, message: str, status: int) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = int(status)


class _SessionRevoker(Protocol):
    def revoke_user(self, user_id: int) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class RegisterRequest:
    """The fields a client submits to create an account."""

    username: str = ""
    password: str = ""
    email: str = ""
    captcha: str = ""


@dataclass
class UserDoc:
    """A stored user account."""

    user_id: int
    username: str
    email: str
    password: str
    created_at: datetime | None = None

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "_id": self.user_id,
            "username": self.username,
            "email": self.email,
            "password": self.password,
        }
        if self.created_at is not None:
            doc["created_at"] = self.created_at
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> UserDoc:
        return cls(
            user_id=int(doc["_id"]),
            username=doc.get("username", ""),
            email=doc.get("email", ""),
            password=doc.get("password", ""),
            created_at=_as_utc(doc.get("created_at")),
        )


@dataclass
class UserBan:
    """A ban placed on a user."""

    user_id: int
    ban_id: Any = None
    banned_by: int | None = None
    ban_reason: str = ""
    ban_start: datetime | None = None
    ban_end: datetime | None = None
    is_active: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> UserBan:
        return cls(
            user_id=int(doc["user_id"]),
            ban_id=doc.get("_id"),
            banned_by=doc.get("banned_by"),
            ban_reason=doc.get("ban_reason") or "",
            ban_start=_as_utc(doc.get("ban_start_time")),
            ban_end=_as_utc(doc.get("ban_end_time")),
            is_active=bool(doc.get("is_active", False)),
            created_at=_as_utc(doc.get("created_at")),
            updated_at=_as_utc(doc.get("updated_at")),
        )


def _hash_password(password: str) -> str:
    encoded = password.encode("utf-8")
    failure = AccountError(2, "Password encryption failed", HTTPStatus.INTERNAL_SERVER_ERROR)
    if len(encoded) > BCRYPT_MAX_PASSWORD_BYTES:
        raise failure
    try:
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("ascii")
    except ValueError as exc:
        raise failure from exc


def register_user(database: Any, request: RegisterRequest) -> UserDoc:
    """Create a user account; captcha checking is left to the caller."""
    username = request.username.strip().lower()
    password = request.password.strip()
    email = request.email.strip()

    if not username or not password or not email:
        raise AccountError(1, "Missing fields", HTTPStatus.BAD_REQUEST)
    if not USERNAME_PATTERN.fullmatch(username):
        raise AccountError(
            1,
            "Username must be lowercase letters, numbers, or underscores",
            HTTPStatus.BAD_REQUEST,
        )

    users = database[USERS_COLLECTION]
    try:
        existing = users.count_documents({"$or": [{"username": username}, {"email": email}]})
    except PyMongoError as exc:
        raise AccountError(2, "Database error", HTTPStatus.INTERNAL_SERVER_ERROR) from exc
    if existing > 0:
        raise AccountError(1, "Username or email already exists", HTTPStatus.CONFLICT)

    hashed = _hash_password(password)

    try:
        user_id = next_sequence_value(database, USER_COUNTER)
    except PyMongoError as exc:
        raise AccountError(
            2, "Failed to generate userId", HTTPStatus.INTERNAL_SERVER_ERROR
        ) from exc

    user = UserDoc(
        user_id=user_id,
        username=username,
        email=email,
        password=hashed,
        created_at=_utcnow(),
    )
    try:
        users.insert_one(user.to_document())
    except PyMongoError as exc:
        raise AccountError(2, "Register failed", HTTPStatus.INTERNAL_SERVER_ERROR) from exc
    return user


def is_user_banned(database: Any, user_id: int) -> UserBan | None:
    """Return the latest active ban of ``user_id`` that has not ended, or None."""
    query = {
        "user_id": user_id,
        "is_active": True,
        "$or": [
            {"ban_end_time": {"$eq": None}},
            {"ban_end_time": {"$gt": _utcnow()}},
        ],
    }
    doc = database[BANS_COLLECTION].find_one(query, sort=[("ban_start_time", DESCENDING)])
    if doc is None:
        return None
    return UserBan.from_document(doc)


def ban_user(
    database: Any,
    user_id: int,
    banned_by: int | None,
    reason: str,
    ban_end: datetime | None,
    tokens: _SessionRevoker | None,
) -> UserBan:
    """Record a ban for ``user_id`` and end all of the user's sessions."""
    now = _utcnow()
    doc = {
        "user_id": user_id,
        "banned_by": banned_by,
        "ban_reason": reason,
        "ban_end_time": ban_end,
        "is_active": True,
        "created_at": now,
        "updated_at": now,
        "ban_start_time": now,
    }
    result = database[BANS_COLLECTION].insert_one(doc)
    if tokens is not None:
        tokens.revoke_user(user_id)
    return UserBan.from_document({**doc, "_id": result.inserted_id})


def unban_user(database: Any, user_id: int) -> int:
    """Deactivate every active ban of ``user_id``; return how many were changed."""
    result = database[BANS_COLLECTION].update_many(
        {"user_id": user_id, "is_active": True},
        {"$set": {"is_active": False, "updated_at": _utcnow()}},
    )
    return result.modified_count