from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch

import bcrypt
import pytest
from pymongo.errors import PyMongoError

from authgate.captcha import CaptchaService
from authgate.web import (
    SESSION_DURATION,
    LoginError,
    create_app,
    is_email,
    is_numeric,
    login,
    serve,
)


def _matches(doc, query):
    for key, expected in query.items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in expected):
                return False
        elif isinstance(expected, dict):
            actual = doc.get(key)
            for op, operand in expected.items():
                if op == "$eq" and actual != operand:
                    return False
                if op == "$gt" and (actual is None or not actual > operand):
                    return False
        elif doc.get(key) != expected:
            return False
    return True


class FakeCollection:
    def __init__(self):
        self.docs = []
        self.queries = []
        self.fail = False

    def _check(self):
        if self.fail:
            raise PyMongoError("down")

    def find_one(self, query, sort=None):
        self._check()
        self.queries.append(query)
        found = [d for d in self.docs if _matches(d, query)]
        if sort:
            key, _ = sort[0]
            found.sort(key=lambda d: d.get(key), reverse=True)
        return dict(found[0]) if found else None

    def count_documents(self, query):
        self._check()
        return sum(1 for d in self.docs if _matches(d, query))

    def insert_one(self, doc):
        self._check()
        self.docs.append(dict(doc))
        return SimpleNamespace(inserted_id=len(self.docs))

    def find_one_and_update(self, query, update, upsert=False, return_document=None):
        self._check()
        found = [d for d in self.docs if _matches(d, query)]
        if found:
            doc = found[0]
        elif upsert:
            doc = dict(query)
            self.docs.append(doc)
        else:
            return None
        for field, step in update.get("$inc", {}).items():
            doc[field] = doc.get(field, 0) + step
        return dict(doc)

    def update_one(self, query, update, upsert=False):
        self._check()


class FakeDatabase(dict):
    def __missing__(self, name):
        collection = FakeCollection()
        self[name] = collection
        return collection


class FakeTokens:
    def __init__(self, fail=False):
        self.issued = []
        self.fail = fail

    def generate(self, user_id, duration):
        if self.fail:
            raise PyMongoError("down")
        self.issued.append((user_id, duration))
        return "token"


class FakeMailer:
    def __init__(self):
        self.sent = []

    def send(self, to, subject, body):
        self.sent.append((list(to), subject, body))


def _hash(password):
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=4)).decode()


@pytest.fixture
def database():
    db = FakeDatabase()
    password = "password"
    db["users"].docs.append(
        {
            "_id": 7,
            "username": "alice",
            "email": "alice@example.com",
            "password": _hash(password),
        }
    )
    return db


@pytest.fixture
def tokens():
    return FakeTokens()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def captcha(tmp_path, mailer):
    template = tmp_path / "captcha.html"
    template.write_text("<p>{{NAME}}: {{CODE}}</p>", encoding="utf-8")
    return CaptchaService(mailer, "AuthGate", template, code_factory=lambda: "123456")


@pytest.fixture
def client(database, tokens, captcha):
    return create_app(database, tokens, captcha).test_client()


@pytest.mark.parametrize(
    "text,expected",
    [
        ("alice@example.com", True),
        ("a.b+c@mail.example.com", True),
        ("alice", False),
        ("alice@example.c", False),
        ("@example.com", False),
        ("alice@example.com ", False),
    ],
)
def test_is_email(text, expected):
    assert is_email(text) is expected


@pytest.mark.parametrize(
    "text,expected",
    [("123", True), ("0", True), ("", False), ("12a", False), ("-1", False), ("١٢", False)],
)
def test_is_numeric(text, expected):
    assert is_numeric(text) is expected


def test_login_by_username_issues_session(database, tokens):
    password = "password"
    assert login(database, tokens, "  alice ", password) == "token"
    assert tokens.issued == [(7, SESSION_DURATION)]
    assert SESSION_DURATION == timedelta(hours=72)


def test_login_by_email_queries_email(database, tokens):
    password = "password"
    assert login(database, tokens, "alice@example.com", password) == "token"
    assert database["users"].queries[0] == {"email": "alice@example.com"}


def test_login_numeric_queries_user_id_field(database, tokens):
    password = "password"
    with pytest.raises(LoginError) as info:
        login(database, tokens, "007", password)
    assert database["users"].queries[0] == {"userId": 7}
    assert info.value.message == "User not found"


@pytest.mark.parametrize("username", ["", "   "])
def test_login_missing_fields(database, tokens, username):
    password = "password"
    with pytest.raises(LoginError) as info:
        login(database, tokens, username, password)
    assert (info.value.code, info.value.message, info.value.status) == (1, "Missing fields", 400)


def test_login_unknown_user(database, tokens):
    password = "password"
    with pytest.raises(LoginError) as info:
        login(database, tokens, "bob", password)
    assert (info.value.code, info.value.status) == (1, 401)
    assert tokens.issued == []


def test_login_wrong_password(database, tokens):
    wrong_password = "secret"
    with pytest.raises(LoginError) as info:
        login(database, tokens, "alice", wrong_password)
    assert (info.value.code, info.value.message, info.value.status) == (
        2,
        "Incorrect password",
        401,
    )
    assert tokens.issued == []


def test_login_database_error(database, tokens):
    database["users"].fail = True
    password = "password"
    with pytest.raises(LoginError) as info:
        login(database, tokens, "alice", password)
    assert (info.value.code, info.value.message, info.value.status) == (1, "Database error", 500)


def test_login_ban_check_error(database, tokens):
    database["users_bans"].fail = True
    password = "password"
    with pytest.raises(LoginError) as info:
        login(database, tokens, "alice", password)
    assert (info.value.code, info.value.message, info.value.status) == (
        4,
        "Ban check failed",
        500,
    )


def test_login_banned_with_reason_and_end(database, tokens):
    end = datetime(2999, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    database["users_bans"].docs.append(
        {
            "user_id": 7,
            "ban_reason": "spam",
            "ban_end_time": end,
            "is_active": True,
            "ban_start_time": datetime(2020, 1, 1, tzinfo=timezone.utc),
        }
    )
    password = "password"
    with pytest.raises(LoginError) as info:
        login(database, tokens, "alice", password)
    assert info.value.code == 5
    assert info.value.status == 200
    assert info.value.message == "User is banned: spam (Until: 2999-01-02 03:04:05)"


def test_login_banned_without_details(database, tokens):
    database["users_bans"].docs.append(
        {
            "user_id": 7,
            "ban_end_time": None,
            "is_active": True,
            "ban_start_time": datetime(2020, 1, 1, tzinfo=timezone.utc),
        }
    )
    password = "password"
    with pytest.raises(LoginError) as info:
        login(database, tokens, "alice", password)
    assert info.value.message == "User is banned"


def test_login_expired_ban_is_ignored(database, tokens):
    database["users_bans"].docs.append(
        {
            "user_id": 7,
            "ban_end_time": datetime(2000, 1, 1, tzinfo=timezone.utc),
            "is_active": True,
            "ban_start_time": datetime(1999, 1, 1, tzinfo=timezone.utc),
        }
    )
    password = "password"
    assert login(database, tokens, "alice", password) == "token"


def test_login_token_failure(database):
    password = "password"
    with pytest.raises(LoginError) as info:
        login(database, FakeTokens(fail=True), "alice", password)
    assert (info.value.code, info.value.message, info.value.status) == (
        3,
        "Token generation failed",
        500,
    )


def test_http_login_success(client):
    response = client.post("/login", json={"username": "alice", "password": "password"})
    assert response.status_code == 200
    assert response.get_json() == {"code": 0, "message": "Login success", "token": "token"}


def test_http_login_invalid_body(client):
    response = client.post("/login", data="not json")
    assert response.status_code == 400
    assert response.get_json() == {"code": 1, "message": "Invalid request"}


def test_http_login_wrong_type_is_invalid(client):
    response = client.post("/login", json={"username": 5, "password": "password"})
    assert response.status_code == 400
    assert response.get_json()["message"] == "Invalid request"


def test_http_login_error_omits_token(client):
    response = client.post("/login", json={"username": "bob", "password": "password"})
    assert response.status_code == 401
    assert "token" not in response.get_json()


def test_http_banned_login_answers_ok(client, database):
    database["users_bans"].docs.append(
        {"user_id": 7, "ban_end_time": None, "is_active": True, "ban_start_time": 1}
    )
    response = client.post("/login", json={"username": "alice", "password": "password"})
    assert response.status_code == 200
    assert response.get_json()["code"] == 5


def test_http_captcha_missing_email(client):
    response = client.post("/captcha", json={"email": "  "})
    assert response.status_code == 400
    assert response.get_json() == {"code": 1, "message": "Missing email"}


def test_http_captcha_sends_and_limits_email(client, mailer):
    first = client.post("/captcha", json={"email": "bob@example.com"})
    assert first.get_json() == {"code": 0, "message": "Captcha sent"}
    assert mailer.sent[0][0] == ["bob@example.com"]
    assert "123456" in mailer.sent[0][2]
    second = client.post(
        "/captcha", json={"email": "bob@example.com"}, headers={"X-Real-IP": "10.0.0.9"}
    )
    assert second.status_code == 429
    assert second.get_json()["message"] == (
        "Too many requests for this email, please try again later"
    )


def test_http_captcha_limits_real_ip(client):
    headers = {"X-Real-IP": "10.0.0.1"}
    client.post("/captcha", json={"email": "bob@example.com"}, headers=headers)
    response = client.post("/captcha", json={"email": "carol@example.com"}, headers=headers)
    assert response.status_code == 429
    assert response.get_json()["message"] == (
        "Too many requests from this IP, please try again later"
    )


def test_http_register_requires_captcha(client):
    response = client.post(
        "/register",
        json={"username": "bob", "password": "password", "email": "bob@example.com"},
    )
    assert response.status_code == 400
    assert response.get_json() == {"code": 1, "message": "Captcha required"}


def test_http_register_rejects_wrong_captcha(client):
    response = client.post(
        "/register",
        json={
            "username": "bob",
            "password": "password",
            "email": "bob@example.com",
            "captcha": "000000",
        },
    )
    assert response.status_code == 401
    assert response.get_json() == {"code": 4, "message": "Invalid or expired captcha"}


def test_http_register_then_login(client, database):
    client.post("/captcha", json={"email": "bob@example.com"})
    response = client.post(
        "/register",
        json={
            "username": "Bob",
            "password": "password",
            "email": "bob@example.com",
            "captcha": "123456",
        },
    )
    assert response.status_code == 200
    assert response.get_json() == {"code": 0, "message": "Register success"}
    stored = [d for d in database["users"].docs if d["username"] == "bob"]
    assert len(stored) == 1
    login_response = client.post("/login", json={"username": "bob", "password": "password"})
    assert login_response.get_json()["code"] == 0


def test_http_register_duplicate_conflicts(client):
    client.post("/captcha", json={"email": "alice@example.com"})
    response = client.post(
        "/register",
        json={
            "username": "alice",
            "password": "password",
            "email": "alice@example.com",
            "captcha": "123456",
        },
    )
    assert response.status_code == 409
    assert response.get_json() == {"code": 1, "message": "Username or email already exists"}


def test_serve_plain(database, tokens, captcha):
    app = create_app(database, tokens, captcha)
    with patch.object(app, "run") as run:
        serve(app, 8080)
    run.assert_called_once_with(host="0.0.0.0", port=8080)


def test_serve_tls(database, tokens, captcha):
    app = create_app(database, tokens, captcha)
    with patch.object(app, "run") as run:
        serve(app, 8443, "cert.pem", "key.pem")
    run.assert_called_once_with(host="0.0.0.0", port=8443, ssl_context=("cert.pem", "key.pem"))