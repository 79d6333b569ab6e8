"""Signed session tokens backed by a MongoDB whitelist with sliding renewal."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from pymongo import ASCENDING
from pymongo.errors import PyMongoError

SIGNING_ALGORITHM = "HS256"
ACCEPTED_ALGORITHMS = ["HS256", "HS384", "HS512"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _from_numeric(value: Any) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(value, timezone.utc)


@dataclass(frozen=True)
class Claims:
    """The verified contents of a session token."""

    user_id: int
    jti: str
    issued_at: datetime
    expires_at: datetime

    @property
    def lifetime(self) -> timedelta:
        return self.expires_at - self.issued_at


class TokenManager:
    """Issues, verifies and revokes whitelisted session tokens."""

    def __init__(
        self,
        collection: Any,
        secret: str | bytes,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._collection = collection
        self._secret = secret
        self._clock = clock or _utcnow
        try:
            collection.create_index([("expires_at", ASCENDING)], expireAfterSeconds=0)
        except PyMongoError:
            pass

    def _now(self) -> datetime:
        return _as_utc(self._clock())

    def generate(self, user_id: int, duration: timedelta) -> str:
        """Sign a token for ``user_id`` valid for ``duration`` and whitelist it."""
        now = self._now()
        expires = now + duration
        jti = str(uuid.uuid4())
        payload = {
            "user_id": user_id,
            "jti": jti,
            "exp": int(expires.timestamp()),
            "iat": int(now.timestamp()),
        }
        token = jwt.encode(payload, self._secret, algorithm=SIGNING_ALGORITHM)
        self._collection.insert_one(
            {"user_id": user_id, "jti": jti, "expires_at": expires}
        )
        return token

    def parse(self, token: str) -> Claims | None:
        """Return the claims of a valid, whitelisted token, renewing it when past half-life."""
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=ACCEPTED_ALGORITHMS,
                options={"verify_exp": False, "verify_iat": False, "verify_nbf": False},
            )
        except jwt.InvalidTokenError:
            return None

        now = self._now()
        user_id = payload.get("user_id")
        jti = payload.get("jti")
        expires_at = _from_numeric(payload.get("exp"))
        issued_at = _from_numeric(payload.get("iat"))
        if isinstance(user_id, bool) or not isinstance(user_id, int):
            return None
        if not isinstance(jti, str) or expires_at is None or issued_at is None:
            return None
        if not now < expires_at:
            return None
        if "nbf" in payload:
            not_before = _from_numeric(payload["nbf"])
            if not_before is None or now < not_before:
                return None

        claims = Claims(user_id=user_id, jti=jti, issued_at=issued_at, expires_at=expires_at)
        selector = {"jti": jti, "user_id": user_id}
        try:
            record = self._collection.find_one(selector)
        except PyMongoError:
            return None
        if record is None:
            return None
        record_expiry = _as_utc(record["expires_at"])
        if now > record_expiry:
            return None

        lifetime = claims.lifetime
        if record_expiry - now < lifetime / 2:
            try:
                self._collection.update_one(
                    selector, {"$set": {"expires_at": now + lifetime}}
                )
            except PyMongoError:
                pass
        return claims

    def revoke(self, jti: str) -> None:
        """Remove one session from the whitelist."""
        try:
            self._collection.delete_one({"jti": jti})
        except PyMongoError:
            pass

    def revoke_user(self, user_id: int) -> None:
        """Remove every session of ``user_id`` from the whitelist."""
        try:
            self._collection.delete_many({"user_id": user_id})
        except PyMongoError:
            pass