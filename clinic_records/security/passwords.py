"""Salted bcrypt password hashing."""

from __future__ import annotations

import bcrypt

from ..config import get_settings

# Compared against when the email is unknown so both failure paths cost one bcrypt check.
_DUMMY_HASH = bcrypt.hashpw(b"clinic-records-dummy", bcrypt.gensalt(rounds=get_settings().bcrypt_rounds)).decode("utf-8")


def hash_password(password: str) -> str:
    rounds = get_settings().bcrypt_rounds
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    """Return ``True`` when ``password`` matches the stored hash."""
    if not password_hash:
        bcrypt.checkpw(password.encode("utf-8"), _DUMMY_HASH.encode("utf-8"))
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed hash in storage
        return False
