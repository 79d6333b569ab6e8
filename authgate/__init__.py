"""User registration, login, bans, e-mailed captchas and whitelisted session tokens over MongoDB."""

__version__ = "0.1.0"