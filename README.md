# authgate

A small authentication library: users register with a username, password
and e-mail address confirmed by an e-mailed six-digit captcha, log in to
receive a signed session token, and can be banned or unbanned. Accounts,
bans, counters and live sessions are kept in MongoDB.

## Modules

### `authgate.database`

- `connect(uri, database)` opens a `MongoClient` (10 second connect and
  server-selection timeouts), sends a `ping`, and returns the named
  database. If the ping fails the client is closed and the error is raised.
- `next_sequence_value(database, counter_id)` atomically increments
  `sequence_value` of the document `counter_id` in the `counters`
  collection, creating it if needed, and returns the new value (the first
  call returns 1).

### `authgate.accounts`

- `register_user(database, request)` takes a `RegisterRequest`
  (`username`, `password`, `email`, `captcha`). It strips the fields,
  lower-cases the username, and raises `AccountError` (with `code`,
  `message` and HTTP `status`) when:
  - a field is empty — code 1, `Missing fields`, 400;
  - the username is not made of lowercase letters, digits and underscores —
    code 1, 400;
  - the username or e-mail already exists in `users` — code 1, 409;
  - the password cannot be hashed (longer than 72 bytes), the id counter or
    the insert fails — code 2, 500.

  On success the password is stored as a bcrypt hash (cost 10) under a new
  `_id` from the `user_id` counter, and the stored `UserDoc` is returned.
  The captcha field is not checked here.
- `is_user_banned(database, user_id)` returns the most recently started
  active ban in `users_bans` whose end time is unset or still in the
  future, as a `UserBan`, or `None`.
- `ban_user(database, user_id, banned_by, reason, ban_end, tokens)` inserts
  an active ban (`ban_end` may be `None` for an open-ended ban), calls
  `tokens.revoke_user(user_id)` when `tokens` is given, and returns the
  `UserBan`.
- `unban_user(database, user_id)` deactivates every active ban of the user
  and returns how many records changed.

### `authgate.tokens`

`TokenManager(collection, secret, clock=None)` issues HS256 tokens and keeps
each token's id (`jti`) on a whitelist in `collection`, with a TTL index on
`expires_at`.

- `generate(user_id, duration)` signs a token carrying `user_id`, `jti`,
  `iat` and `exp`, whitelists it and returns it.
- `parse(token)` returns `Claims` (`user_id`, `jti`, `issued_at`,
  `expires_at`, and the derived `lifetime`) when the signature is valid, the
  token's own `exp` has not passed, and its whitelist entry exists and has
  not expired; otherwise `None`. When less than half the token's lifetime
  remains on the whitelist entry, the entry is pushed forward by a full
  lifetime. The token's own `exp` is not changed, so it still stops being
  accepted at that time.
- `revoke(jti)` ends one session; `revoke_user(user_id)` ends them all.

### `authgate.captcha`

- `generate_code()` returns a random six-digit string.
- `ExpiringStore` is a thread-safe in-memory mapping with per-entry
  lifetimes (`set`, `get`, `delete`, and `in`).
- `CaptchaService(mailer, app_name, template_path=...)` mails codes and
  checks them:
  - `request(email, client_ip)` reads the HTML template (by default
    `./resources/template/email/captcha.html`), replaces `{{CODE}}` and
    `{{NAME}}`, and sends it through `mailer.send`. A code lives for ten
    minutes. After a successful send, the same e-mail address and the same
    client IP are each refused for one minute. Failures raise
    `CaptchaError` with `code`, `message` and HTTP `status` (1/400 for a
    missing e-mail, 3/429 when rate-limited, 2/500 when the template cannot
    be read or the mail cannot be sent).
  - `verify(email, code)` returns `True` once for a matching code and
    removes it.

### `authgate.mailer`

`Mailer(host, port, username, password, sender_name, timeout=10.0)` sends
HTML mail from `"sender_name <username>"`. Port 465 uses implicit TLS;
other ports upgrade with STARTTLS when the server offers it. It logs in when
a username is set and the server offers AUTH. Errors are logged and raised.

```python
from authgate.mailer import Mailer

password = "password"
mailer = Mailer("smtp.example.com", 587, "noreply@example.com", password, "Example")
mailer.send(["alice@example.com"], "Hello", "<p>Hi</p>")
```

### `authgate.web`

- `is_email(text)` and `is_numeric(text)` classify a login name.
- `login(database, tokens, username, password)` looks the user up by
  `email` when the name looks like an e-mail address, by a `userId` field
  when it is all digits, and by `username` otherwise, then refuses banned
  users (code 5, with the ban reason and `(Until: YYYY-MM-DD HH:MM:SS)` in
  UTC) and wrong passwords (code 2), and returns a token valid for 72 hours.
  Failures raise `LoginError` with `code`, `message` and HTTP `status`.
  Note that `register_user` stores the numeric id as `_id`, not `userId`.
- `create_app(database, tokens, captcha)` builds a Flask app with JSON
  endpoints:

  | Path        | Body                                           |
  |-------------|------------------------------------------------|
  | `/captcha`  | `{"email": ...}`                               |
  | `/register` | `{"username", "password", "email", "captcha"}` |
  | `/login`    | `{"username", "password"}`                     |

  Every response carries a numeric `code` (0 on success) and a `message`;
  a successful login also carries `token`. A body that is not a JSON
  object of strings gets code 1, `Invalid request`, 400. `/register`
  checks the captcha before creating the account (code 1 when empty,
  code 4 with 401 when wrong or expired).
- `serve(app, port, ssl_cert=None, ssl_key=None)` runs the app on all
  interfaces, over HTTPS when both a certificate and a key are given.

```python
from authgate.captcha import CaptchaService
from authgate.database import connect
from authgate.tokens import TokenManager
from authgate.web import create_app, serve

database = connect("mongodb://localhost:27017", "authgate")
tokens = TokenManager(database["users_jwts"], secret="secret")
captcha = CaptchaService(mailer, "Example")
serve(create_app(database, tokens, captcha), 8080)
```

### `authgate.command`

A registry of case-insensitive console commands, with `help` built in.

```python
from authgate.command import register_handler, parse_and_execute, list_commands

def greet(args):
    print("hello", *args)

register_handler("greet", greet)
parse_and_execute("GREET world")   # prints: hello world
print(list_commands())             # ['greet', 'help'] (sorted)
```

An empty or unknown command line raises `authgate.command.CommandError`.

## What it does not do

- There is no configuration file and no installed command: the database,
  token secret, mailer and port are passed in by the code that wires the
  pieces together, as in the example above.
- Nothing reads console input; the command registry only dispatches lines
  it is given, and the only built-in command is `help`.
- There are no HTTP endpoints or commands for banning, unbanning or
  revoking sessions; call the functions in `authgate.accounts` and
  `authgate.tokens` directly.
- The captcha e-mail template is not included; supply one at the template
  path.

## Installing for development

Install the package with its `test` extra and run the suite with pytest.